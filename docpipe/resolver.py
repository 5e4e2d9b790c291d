from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from docpipe.payloads import (
    ChunkPayload,
    EmbedPayload,
    OcrPayload,
    ParsePayload,
    QuizGeneratePayload,
    SummarizePayload,
    dump_payload,
)
from docpipe.runtime_profile import env_int
from docpipe.states import JOB_TYPES

DEFAULT_PRIORITIES: dict[str, int] = {
    "parse": 60,
    "ocr": 50,
    "chunk": 40,
    "embed": 30,
    "summarize": 20,
    "quiz_generate": 10,
}

# Job type that moves a document out of each status that has one.
_STATUS_JOB_TYPE: dict[str, str] = {
    "chunking": "chunk",
    "embedding": "embed",
    "summarizing": "summarize",
    "quiz_generating": "quiz_generate",
}


@dataclass(frozen=True)
class JobSpec:
    job_type: str
    priority: int
    payload: BaseModel

    def payload_dict(self) -> dict[str, Any]:
        return dump_payload(self.payload)


@dataclass
class StageResolver:
    """Maps a document's current state to the one job that should run next.

    Pure with respect to the store: it looks only at the document row, so
    calling it twice for the same state yields the same JobSpec and the store's
    uniqueness constraint turns the second enqueue into a no-op.
    """

    priorities: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PRIORITIES))

    def priority_for(self, job_type: str) -> int:
        return int(self.priorities.get(job_type, DEFAULT_PRIORITIES[job_type]))

    def job_type_for(self, document: Mapping[str, Any]) -> str | None:
        if document.get("cancelled_at"):
            return None
        status = str(document.get("status") or "")
        if status in {"uploaded", "parsing"}:
            return "ocr" if document.get("needs_ocr") is True else "parse"
        return _STATUS_JOB_TYPE.get(status)

    def next_job_for(self, document: Mapping[str, Any]) -> JobSpec | None:
        job_type = self.job_type_for(document)
        if job_type is None:
            return None
        return JobSpec(
            job_type=job_type,
            priority=self.priority_for(job_type),
            payload=_build_payload(job_type, document),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> StageResolver:
        env = os.environ if environ is None else environ
        priorities = {
            job_type: env_int(env, f"DOCPIPE_PRIORITY_{job_type.upper()}", default=default, minimum=0)
            for job_type, default in DEFAULT_PRIORITIES.items()
        }
        return cls(priorities=priorities)


def _build_payload(job_type: str, document: Mapping[str, Any]) -> BaseModel:
    base = {
        "document_id": str(document["document_id"]),
        "owner_id": str(document["owner_id"]),
    }
    if job_type == "parse":
        return ParsePayload(
            **base,
            storage_path=str(document.get("storage_path") or ""),
            file_type=str(document.get("file_type") or ""),
            filename=str(document.get("filename") or ""),
        )
    if job_type == "ocr":
        return OcrPayload(
            **base,
            storage_path=str(document.get("storage_path") or ""),
            file_type=str(document.get("file_type") or ""),
            page_count=document.get("page_count"),
        )
    if job_type == "chunk":
        return ChunkPayload(
            **base,
            ocr_used=document.get("needs_ocr") is True,
            page_count=document.get("page_count"),
        )
    if job_type == "embed":
        return EmbedPayload(**base)
    if job_type == "summarize":
        return SummarizePayload(**base)
    if job_type == "quiz_generate":
        return QuizGeneratePayload(**base)
    raise ValueError(f"unknown job type: {job_type}; expected one of {JOB_TYPES}")


default_resolver = StageResolver()


def next_job_for(document: Mapping[str, Any]) -> JobSpec | None:
    return default_resolver.next_job_for(document)
