from __future__ import annotations

import copy
import itertools
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from docpipe.errors import ApiError, DocumentCancelled, DuplicateActiveJob
from docpipe.states import ACTIVE_JOB_STATUSES, TERMINAL_DOCUMENT_STATUSES, check_job_transition


JOB_FIELDS: tuple[str, ...] = (
    "job_id",
    "document_id",
    "owner_id",
    "job_type",
    "status",
    "priority",
    "attempts",
    "max_attempts",
    "run_after",
    "payload",
    "result",
    "last_error",
    "worker_id",
    "started_at",
    "finished_at",
    "created_at",
    "updated_at",
)

DOCUMENT_FIELDS: tuple[str, ...] = (
    "document_id",
    "owner_id",
    "title",
    "filename",
    "file_type",
    "storage_path",
    "status",
    "last_error",
    "page_count",
    "needs_ocr",
    "failed_stage",
    "cancelled_at",
    "created_at",
    "updated_at",
)

# Columns a caller may set through transition_document/update_document.
MUTABLE_DOCUMENT_FIELDS: frozenset[str] = frozenset(
    {"last_error", "page_count", "needs_ocr", "failed_stage", "cancelled_at"}
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:16]}"


def check_document_fields(fields: dict[str, Any] | None) -> dict[str, Any]:
    payload = dict(fields or {})
    unknown = set(payload) - MUTABLE_DOCUMENT_FIELDS
    if unknown:
        raise ValueError(f"unsupported document fields: {sorted(unknown)}")
    return payload


def claim_sort_key(job: dict[str, Any]) -> tuple[Any, ...]:
    run_after = parse_iso(job.get("run_after"))
    return (
        -int(job["priority"]),
        run_after is not None,
        run_after or datetime.min.replace(tzinfo=UTC),
        job["created_at"],
        job["_seq"],
    )


def page(items: list[dict[str, Any]], *, cursor: str | None, limit: int) -> dict[str, Any]:
    start = 0
    if cursor:
        try:
            start = max(0, int(cursor))
        except ValueError:
            start = 0
    limit = min(max(limit, 1), 100)
    sliced = items[start : start + limit]
    next_cursor = str(start + limit) if start + limit < len(items) else None
    return {"items": sliced, "total": len(items), "next_cursor": next_cursor}


class InMemoryJobStore:
    """Process-local job record store; one re-entrant lock makes every operation atomic."""

    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self._lock = threading.RLock()
        self._seq = itertools.count(1)
        self._jobs: dict[str, dict[str, Any]] = {}
        self._documents: dict[str, dict[str, Any]] = {}
        self._events: dict[str, list[dict[str, Any]]] = {}

    def _now_iso(self) -> str:
        return to_iso(self.clock()) or ""

    @staticmethod
    def _public(row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {key: copy.deepcopy(val) for key, val in row.items() if not key.startswith("_")}

    @staticmethod
    def _set_job_status(job: dict[str, Any], target: str, now: str) -> None:
        check_job_transition(job["status"], target)
        job["status"] = target
        job["updated_at"] = now

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._documents.clear()
            self._events.clear()

    # documents

    def create_document(self, *, document: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            document_id = str(document["document_id"])
            if document_id in self._documents:
                raise ApiError(
                    code="DOC_ALREADY_EXISTS",
                    message="document already exists",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            now = self._now_iso()
            row = {field: document.get(field) for field in DOCUMENT_FIELDS}
            row["status"] = "uploaded"
            row["created_at"] = now
            row["updated_at"] = now
            self._documents[document_id] = row
            self._events[document_id] = []
            return self._public(row)  # type: ignore[return-value]

    def get_document(self, *, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._public(self._documents.get(document_id))

    def transition_document(
        self,
        *,
        document_id: str,
        expected_status: str,
        new_status: str,
        job_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        updates = check_document_fields(fields)
        with self._lock:
            row = self._documents.get(document_id)
            if row is None or row["status"] != expected_status or row.get("cancelled_at"):
                return None
            now = self._now_iso()
            row.update(updates)
            row["status"] = new_status
            row["updated_at"] = now
            self._events.setdefault(document_id, []).append(
                {
                    "seq": next(self._seq),
                    "document_id": document_id,
                    "from_status": expected_status,
                    "to_status": new_status,
                    "job_id": job_id,
                    "occurred_at": now,
                }
            )
            return self._public(row)

    def update_document(self, *, document_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        updates = check_document_fields(fields)
        with self._lock:
            row = self._documents.get(document_id)
            if row is None:
                return None
            row.update(updates)
            row["updated_at"] = self._now_iso()
            return self._public(row)

    def cancel_document(self, *, document_id: str) -> list[dict[str, Any]] | None:
        """Set ``cancelled_at`` and cancel the active jobs together; None if not cancellable."""
        with self._lock:
            row = self._documents.get(document_id)
            if row is None or row.get("cancelled_at") or row["status"] in TERMINAL_DOCUMENT_STATUSES:
                return None
            now = self._now_iso()
            row["cancelled_at"] = now
            row["updated_at"] = now
            return self.cancel_active_jobs(document_id=document_id)

    def list_status_events(self, *, document_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(x) for x in self._events.get(document_id, [])]

    # jobs

    def enqueue(
        self,
        *,
        document_id: str,
        owner_id: str,
        job_type: str,
        priority: int,
        payload: dict[str, Any],
        max_attempts: int,
        run_after: datetime | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            document = self._documents.get(document_id)
            if document is not None and document.get("cancelled_at"):
                raise DocumentCancelled(document_id=document_id)
            for job in self._jobs.values():
                if (
                    job["document_id"] == document_id
                    and job["job_type"] == job_type
                    and job["status"] in ACTIVE_JOB_STATUSES
                ):
                    raise DuplicateActiveJob(document_id=document_id, job_type=job_type)
            now = self._now_iso()
            job = {
                "job_id": new_job_id(),
                "document_id": document_id,
                "owner_id": owner_id,
                "job_type": job_type,
                "status": "queued",
                "priority": int(priority),
                "attempts": 0,
                "max_attempts": int(max_attempts),
                "run_after": to_iso(run_after),
                "payload": copy.deepcopy(payload),
                "result": None,
                "last_error": None,
                "worker_id": None,
                "started_at": None,
                "finished_at": None,
                "created_at": now,
                "updated_at": now,
                "_seq": next(self._seq),
            }
            self._jobs[job["job_id"]] = job
            return self._public(job)  # type: ignore[return-value]

    def claim_next(self, *, worker_id: str) -> dict[str, Any] | None:
        with self._lock:
            now = self.clock()
            eligible = [
                job
                for job in self._jobs.values()
                if job["status"] == "queued"
                and (job["run_after"] is None or parse_iso(job["run_after"]) <= now)  # type: ignore[operator]
            ]
            if not eligible:
                return None
            job = min(eligible, key=claim_sort_key)
            self._set_job_status(job, "processing", to_iso(now) or "")
            job["worker_id"] = worker_id
            job["started_at"] = to_iso(now)
            return self._public(job)

    def complete_job(self, *, job_id: str, result: dict[str, Any] | None) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job["status"] != "processing":
                return None
            now = self._now_iso()
            self._set_job_status(job, "succeeded", now)
            job["result"] = copy.deepcopy(result)
            job["last_error"] = None
            job["finished_at"] = now
            return self._public(job)

    def fail_job(self, *, job_id: str, error: str, retry_at: datetime | None) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job["status"] != "processing":
                return None
            now = self._now_iso()
            job["attempts"] = int(job["attempts"]) + 1
            job["last_error"] = error
            if retry_at is None:
                self._set_job_status(job, "failed", now)
                job["finished_at"] = now
            else:
                self._set_job_status(job, "queued", now)
                job["run_after"] = to_iso(retry_at)
                job["worker_id"] = None
            return self._public(job)

    def cancel_active_jobs(self, *, document_id: str) -> list[dict[str, Any]]:
        with self._lock:
            now = self._now_iso()
            cancelled: list[dict[str, Any]] = []
            for job in self._jobs.values():
                if job["document_id"] != document_id or job["status"] not in ACTIVE_JOB_STATUSES:
                    continue
                self._set_job_status(job, "cancelled", now)
                job["finished_at"] = now
                cancelled.append(self._public(job))  # type: ignore[arg-type]
            return cancelled

    def release_stale_jobs(self, *, older_than: datetime) -> list[dict[str, Any]]:
        with self._lock:
            now = self._now_iso()
            released: list[dict[str, Any]] = []
            for job in self._jobs.values():
                if job["status"] != "processing":
                    continue
                started_at = parse_iso(job["started_at"])
                if started_at is None or started_at >= older_than:
                    continue
                self._set_job_status(job, "queued", now)
                job["worker_id"] = None
                released.append(self._public(job))  # type: ignore[arg-type]
            return released

    def get_job(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._public(self._jobs.get(job_id))

    def latest_job(self, *, document_id: str, job_type: str) -> dict[str, Any] | None:
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if job["document_id"] == document_id and job["job_type"] == job_type
            ]
            if not jobs:
                return None
            return self._public(max(jobs, key=lambda j: j["_seq"]))

    def list_jobs(
        self,
        *,
        document_id: str | None = None,
        status: str | None = None,
        job_type: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j["_seq"])
            if document_id:
                jobs = [j for j in jobs if j["document_id"] == document_id]
            if status:
                jobs = [j for j in jobs if j["status"] == status]
            if job_type:
                jobs = [j for j in jobs if j["job_type"] == job_type]
            return page([self._public(j) for j in jobs], cursor=cursor, limit=limit)  # type: ignore[misc]

    def count_jobs_by_status(self) -> dict[str, dict[str, int]]:
        with self._lock:
            counts: dict[str, dict[str, int]] = {}
            for job in self._jobs.values():
                per_type = counts.setdefault(job["job_type"], {})
                per_type[job["status"]] = per_type.get(job["status"], 0) + 1
            return counts
