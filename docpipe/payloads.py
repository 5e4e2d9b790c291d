"""Stage payloads as a tagged union keyed by ``job_type``.

The store keeps payloads as JSON; these models give each stage a concrete
shape when a job is built and again when a worker hands it to an executor.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class _StagePayload(BaseModel):
    document_id: str
    owner_id: str


class ParsePayload(_StagePayload):
    job_type: Literal["parse"] = "parse"
    storage_path: str
    file_type: str
    filename: str = ""


class OcrPayload(_StagePayload):
    job_type: Literal["ocr"] = "ocr"
    storage_path: str
    file_type: str
    page_count: int | None = None


class ChunkPayload(_StagePayload):
    job_type: Literal["chunk"] = "chunk"
    ocr_used: bool = False
    page_count: int | None = None


class EmbedPayload(_StagePayload):
    job_type: Literal["embed"] = "embed"
    embedding_model: str = "text-embedding-3-small"


class SummarizePayload(_StagePayload):
    job_type: Literal["summarize"] = "summarize"
    length: Literal["short", "medium", "long"] = "medium"


class QuizGeneratePayload(_StagePayload):
    job_type: Literal["quiz_generate"] = "quiz_generate"
    difficulty: Literal["easy", "medium", "hard"] = "medium"


StagePayload = Annotated[
    Union[
        ParsePayload,
        OcrPayload,
        ChunkPayload,
        EmbedPayload,
        SummarizePayload,
        QuizGeneratePayload,
    ],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(StagePayload)


def load_payload(raw: dict[str, Any]) -> Any:
    return _payload_adapter.validate_python(raw)


def dump_payload(payload: BaseModel) -> dict[str, Any]:
    return payload.model_dump(mode="json")


class IndexPayload(_StagePayload):
    """Input of the inline index capability; never stored as a job payload."""

    job_type: Literal["index"] = "index"
    chunk_count: int = 0
    embedding_model: str = "text-embedding-3-small"
