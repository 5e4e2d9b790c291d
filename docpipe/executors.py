from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from docpipe.states import JOB_TYPES

logger = logging.getLogger(__name__)

# Inline capability run by the pipeline between embedding and summarizing.
INDEX_CAPABILITY = "index"


@dataclass(frozen=True)
class StageError:
    retryable: bool
    message: str


@dataclass(frozen=True)
class StageOutcome:
    success: bool
    result: dict[str, Any] | None = None
    error: StageError | None = None
    needs_ocr: bool | None = None

    @classmethod
    def ok(cls, result: dict[str, Any] | None = None, *, needs_ocr: bool | None = None) -> StageOutcome:
        return cls(success=True, result=dict(result or {}), needs_ocr=needs_ocr)

    @classmethod
    def transient(cls, message: str) -> StageOutcome:
        return cls(success=False, error=StageError(retryable=True, message=message))

    @classmethod
    def fatal(cls, message: str) -> StageOutcome:
        return cls(success=False, error=StageError(retryable=False, message=message))


class StageExecutor(Protocol):
    """Runs one stage for one document.

    Implementations must be idempotent: a job can be executed again after a
    worker crash or a stale release, so outputs are upserted by
    ``(document_id, stage, sequence)`` rather than appended.
    """

    def execute(self, job_type: str, payload: BaseModel) -> StageOutcome: ...


@dataclass
class ExecutorRegistry:
    _executors: dict[str, StageExecutor] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def register(self, job_type: str, executor: StageExecutor) -> None:
        if job_type not in JOB_TYPES and job_type != INDEX_CAPABILITY:
            raise ValueError(f"unknown job type: {job_type}")
        with self._lock:
            self._executors[job_type] = executor

    def unregister(self, job_type: str) -> None:
        with self._lock:
            self._executors.pop(job_type, None)

    def get(self, job_type: str) -> StageExecutor | None:
        with self._lock:
            return self._executors.get(job_type)

    def has_index(self) -> bool:
        return self.get(INDEX_CAPABILITY) is not None

    def registered(self) -> list[str]:
        with self._lock:
            return sorted(self._executors)


def run_executor(executor: StageExecutor, job_type: str, payload: BaseModel, *, label: str) -> StageOutcome:
    """Call ``executor`` and turn whatever happens into a StageOutcome.

    Exceptions become transient failures; a return value that is not a
    StageOutcome is a broken executor and fails fatally.
    """
    try:
        outcome = executor.execute(job_type, payload)
    except Exception as exc:
        logger.exception("executor_crashed %s job_type=%s", label, job_type)
        return StageOutcome.transient(f"{type(exc).__name__}: {exc}")
    if not isinstance(outcome, StageOutcome):
        logger.error(
            "executor_invalid_outcome %s job_type=%s returned=%s",
            label,
            job_type,
            type(outcome).__name__,
        )
        return StageOutcome.fatal(f"executor returned {type(outcome).__name__} instead of a StageOutcome")
    return outcome
