"""
Deterministic stage executors for local runs and end-to-end tests.

Outputs are derived from a sha256 of the document id, so the same document
always produces the same page count, chunk count and summary. Tests can
script failures per job type with ``MockStageExecutor.script``.
"""

from __future__ import annotations

import hashlib
import threading
from collections import defaultdict, deque
from typing import Any

from pydantic import BaseModel

from docpipe.executors import INDEX_CAPABILITY, ExecutorRegistry, StageOutcome
from docpipe.states import JOB_TYPES

# File types whose text layer is missing and must go through OCR.
OCR_FILE_TYPES = frozenset({"image"})


def _deterministic_int(seed: str, min_val: int, max_val: int) -> int:
    h = hashlib.sha256(seed.encode()).hexdigest()
    return min_val + int(h[:8], 16) % (max_val - min_val + 1)


class MockStageExecutor:
    def __init__(self, *, ocr_file_types: frozenset[str] = OCR_FILE_TYPES) -> None:
        self.ocr_file_types = ocr_file_types
        self.calls: list[tuple[str, str]] = []
        self._scripted: dict[str, deque[StageOutcome | Exception]] = defaultdict(deque)
        self._lock = threading.Lock()

    def script(self, job_type: str, *outcomes: StageOutcome | Exception) -> None:
        """Queue outcomes (or exceptions to raise) returned before the default behaviour."""
        with self._lock:
            self._scripted[job_type].extend(outcomes)

    def _next_scripted(self, job_type: str) -> StageOutcome | Exception | None:
        with self._lock:
            queued = self._scripted.get(job_type)
            if queued:
                return queued.popleft()
            return None

    def execute(self, job_type: str, payload: BaseModel) -> StageOutcome:
        data = payload.model_dump()
        document_id = str(data.get("document_id") or "")
        with self._lock:
            self.calls.append((job_type, document_id))
        scripted = self._next_scripted(job_type)
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            return scripted
        handler = getattr(self, f"_run_{job_type}")
        return handler(document_id, data)

    def _run_parse(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        if not data.get("storage_path"):
            return StageOutcome.fatal("storage_path is empty")
        page_count = _deterministic_int(f"{document_id}:pages", 1, 40)
        needs_ocr = str(data.get("file_type") or "") in self.ocr_file_types
        return StageOutcome.ok(
            {"page_count": page_count, "text_chars": 0 if needs_ocr else page_count * 1800},
            needs_ocr=needs_ocr,
        )

    def _run_ocr(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        page_count = data.get("page_count") or _deterministic_int(f"{document_id}:pages", 1, 40)
        return StageOutcome.ok({"page_count": page_count, "ocr_pages": page_count})

    def _run_chunk(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        pages = int(data.get("page_count") or 1)
        return StageOutcome.ok({"chunk_count": pages * _deterministic_int(f"{document_id}:chunks", 2, 6)})

    def _run_embed(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        return StageOutcome.ok(
            {
                "embedding_model": data.get("embedding_model"),
                "vector_count": _deterministic_int(f"{document_id}:vectors", 4, 240),
            }
        )

    def _run_index(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        return StageOutcome.ok({"indexed": True, "chunk_count": int(data.get("chunk_count") or 0)})

    def _run_summarize(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        digest = hashlib.sha256(document_id.encode()).hexdigest()[:12]
        return StageOutcome.ok({"summary": f"summary:{digest}", "length": data.get("length")})

    def _run_quiz_generate(self, document_id: str, data: dict[str, Any]) -> StageOutcome:
        return StageOutcome.ok(
            {
                "question_count": _deterministic_int(f"{document_id}:quiz", 5, 15),
                "difficulty": data.get("difficulty"),
            }
        )


def build_mock_registry(
    executor: MockStageExecutor | None = None,
    *,
    include_index: bool = True,
) -> ExecutorRegistry:
    executor = executor or MockStageExecutor()
    registry = ExecutorRegistry()
    for job_type in JOB_TYPES:
        registry.register(job_type, executor)
    if include_index:
        registry.register(INDEX_CAPABILITY, executor)
    return registry
