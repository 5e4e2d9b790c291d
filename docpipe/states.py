from __future__ import annotations

from docpipe.errors import InvalidTransition

DOCUMENT_SEQUENCE: tuple[str, ...] = (
    "uploaded",
    "parsing",
    "chunking",
    "embedding",
    "indexing",
    "summarizing",
    "quiz_generating",
    "ready",
)
TERMINAL_DOCUMENT_STATUSES: frozenset[str] = frozenset({"ready", "failed"})

FILE_TYPES: frozenset[str] = frozenset({"pdf", "docx", "pptx", "txt", "image"})

JOB_TYPES: tuple[str, ...] = ("parse", "ocr", "chunk", "embed", "summarize", "quiz_generate")
JOB_STATUSES: frozenset[str] = frozenset({"queued", "processing", "succeeded", "failed", "cancelled"})
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"queued", "processing"})

ALLOWED_JOB_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"processing", "cancelled"},
    "processing": {"succeeded", "queued", "failed", "cancelled"},
    "succeeded": set(),
    "failed": set(),
    "cancelled": set(),
}

# Document status during which each job type runs. OCR is a detour inside "parsing".
JOB_TYPE_STAGE: dict[str, str] = {
    "parse": "parsing",
    "ocr": "parsing",
    "chunk": "chunking",
    "embed": "embedding",
    "summarize": "summarizing",
    "quiz_generate": "quiz_generating",
}

# Stages completed by the dispatcher without a job record.
INLINE_STAGES: frozenset[str] = frozenset({"indexing"})


def check_job_transition(current: str, target: str) -> None:
    if target not in ALLOWED_JOB_TRANSITIONS.get(current, set()):
        raise InvalidTransition(entity="job", current=current, target=target)


def next_document_status(status: str) -> str:
    idx = DOCUMENT_SEQUENCE.index(status)
    if idx + 1 >= len(DOCUMENT_SEQUENCE):
        raise ValueError(f"no status after {status}")
    return DOCUMENT_SEQUENCE[idx + 1]


def is_forward(current: str, target: str) -> bool:
    if current not in DOCUMENT_SEQUENCE or target not in DOCUMENT_SEQUENCE:
        return False
    return DOCUMENT_SEQUENCE.index(target) > DOCUMENT_SEQUENCE.index(current)
