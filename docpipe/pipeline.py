from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from docpipe.errors import ApiError, DocumentCancelled, DuplicateActiveJob, InvalidTransition, not_found
from docpipe.executors import INDEX_CAPABILITY, ExecutorRegistry, StageError, StageOutcome, run_executor
from docpipe.lifecycle import DocumentLifecycle
from docpipe.mock_executors import build_mock_registry
from docpipe.payloads import IndexPayload
from docpipe.resolver import StageResolver
from docpipe.retry_policy import RetryPolicy
from docpipe.runtime_profile import env_bool, true_stack_required
from docpipe.states import FILE_TYPES, INLINE_STAGES, JOB_TYPE_STAGE, TERMINAL_DOCUMENT_STATUSES
from docpipe.store import InMemoryJobStore, utcnow
from docpipe.store_backends import create_store_from_env

logger = logging.getLogger(__name__)


def _conflict(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


class DocumentPipeline:
    """Couples the job store, the lifecycle tracker and the resolver.

    Workers report through ``complete`` and ``fail``; API handlers and
    operators use the document-level operations. Every write goes through a
    conditional update, so a report that lost a race (cancelled job, stale
    release, concurrent retry) is dropped instead of moving the document.
    """

    def __init__(
        self,
        *,
        store: Any,
        registry: ExecutorRegistry | None = None,
        resolver: StageResolver | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry if registry is not None else ExecutorRegistry()
        self.resolver = resolver or StageResolver()
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or getattr(store, "clock", utcnow)
        self.lifecycle = DocumentLifecycle(store=store)

    def _require_document(self, document_id: str) -> dict[str, Any]:
        document = self.store.get_document(document_id=document_id)
        if document is None:
            raise not_found(code="DOC_NOT_FOUND", message="document not found")
        return document

    # scheduling

    def _schedule_next(self, document: dict[str, Any]) -> dict[str, Any] | None:
        spec = self.resolver.next_job_for(document)
        if spec is None:
            return None
        try:
            job = self.store.enqueue(
                document_id=document["document_id"],
                owner_id=document["owner_id"],
                job_type=spec.job_type,
                priority=spec.priority,
                payload=spec.payload_dict(),
                max_attempts=self.retry_policy.max_attempts_for(spec.job_type),
            )
        except DuplicateActiveJob:
            logger.debug(
                "job_enqueue_skipped_duplicate document_id=%s job_type=%s",
                document["document_id"],
                spec.job_type,
            )
            return None
        except DocumentCancelled:
            logger.info(
                "job_enqueue_skipped_cancelled document_id=%s job_type=%s",
                document["document_id"],
                spec.job_type,
            )
            return None
        logger.info(
            "job_enqueued job_id=%s document_id=%s job_type=%s priority=%s",
            job["job_id"],
            job["document_id"],
            job["job_type"],
            job["priority"],
        )
        return job

    def _resume(self, document: dict[str, Any]) -> dict[str, Any] | None:
        if document["status"] in INLINE_STAGES:
            return self._run_inline_index(document)
        self._schedule_next(document)
        return document

    # document operations

    def register_document(
        self,
        *,
        document_id: str,
        owner_id: str,
        file_type: str,
        storage_path: str,
        filename: str = "",
        title: str = "",
    ) -> dict[str, Any]:
        if file_type not in FILE_TYPES:
            raise ApiError(
                code="DOC_FILE_TYPE_UNSUPPORTED",
                message=f"unsupported file type: {file_type}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        self.store.create_document(
            document={
                "document_id": document_id,
                "owner_id": owner_id,
                "title": title,
                "filename": filename,
                "file_type": file_type,
                "storage_path": storage_path,
            }
        )
        return self.on_document_created(document_id)

    def on_document_created(self, document_id: str) -> dict[str, Any]:
        document = self._require_document(document_id)
        if document["status"] != "uploaded":
            raise InvalidTransition(entity="document", current=document["status"], target="parsing")
        job = self._schedule_next(document)
        if job is None:
            # A parse job is already active; the first caller applied or will apply the transition.
            return self.get_status(document_id)
        self._ensure_started(document_id, job_id=job["job_id"])
        return self.get_status(document_id)

    def _ensure_started(self, document_id: str, *, job_id: str) -> dict[str, Any] | None:
        try:
            return self.lifecycle.start(document_id, job_id=job_id)
        except InvalidTransition:
            # The worker that ran the parse job already moved the document.
            return None

    def get_status(self, document_id: str) -> dict[str, Any]:
        return self.lifecycle.get_status(document_id)

    def list_status_events(self, document_id: str) -> list[dict[str, Any]]:
        self._require_document(document_id)
        return self.store.list_status_events(document_id=document_id)

    def retry_document(self, document_id: str) -> dict[str, Any]:
        document = self._require_document(document_id)
        if document["status"] != "failed":
            raise _conflict("DOC_RETRY_CONFLICT", "only failed documents can be retried")
        if document.get("cancelled_at"):
            raise _conflict("DOC_RETRY_CONFLICT", "cancelled documents cannot be retried")
        updated = self.lifecycle.reset_for_retry(document_id)
        if updated is None:
            raise _conflict("DOC_RETRY_CONFLICT", "document changed during retry")
        self._resume(updated)
        return self.get_status(document_id)

    def cancel_document(self, document_id: str) -> dict[str, Any]:
        self._require_document(document_id)
        cancelled = self.lifecycle.mark_cancelled(document_id)
        if cancelled is None:
            raise _conflict("DOC_CANCEL_CONFLICT", "document is not cancellable")
        data = self.get_status(document_id)
        data["cancelled_jobs"] = [job["job_id"] for job in cancelled]
        return data

    # worker reports

    def complete(self, *, job: dict[str, Any], outcome: StageOutcome) -> dict[str, Any] | None:
        result = dict(outcome.result or {})
        if job["job_type"] == "parse":
            result["needs_ocr"] = bool(outcome.needs_ocr)
        updated = self.store.complete_job(job_id=job["job_id"], result=result)
        if updated is None:
            logger.warning(
                "job_result_discarded job_id=%s document_id=%s job_type=%s",
                job["job_id"],
                job["document_id"],
                job["job_type"],
            )
            return None
        logger.info(
            "job_succeeded job_id=%s document_id=%s job_type=%s",
            job["job_id"],
            job["document_id"],
            job["job_type"],
        )
        self._apply_success(updated)
        return updated

    def _apply_success(self, job: dict[str, Any]) -> dict[str, Any] | None:
        document = self.store.get_document(document_id=job["document_id"])
        if document is None or document.get("cancelled_at"):
            return None
        if document["status"] == "uploaded" and job["job_type"] == "parse":
            self._ensure_started(document["document_id"], job_id=job["job_id"])
            document = self._require_document(document["document_id"])
        stage = JOB_TYPE_STAGE[job["job_type"]]
        result = job.get("result") or {}
        if document["status"] != stage:
            return None
        fields: dict[str, Any] | None = None
        if job["job_type"] == "parse":
            fields = {"needs_ocr": bool(result.get("needs_ocr")), "page_count": result.get("page_count")}
            if fields["needs_ocr"]:
                document = self.lifecycle.record_stage_output(document["document_id"], fields=fields)
                if document is not None:
                    self._schedule_next(document)
                return document
        elif job["job_type"] == "ocr" and result.get("page_count") is not None:
            fields = {"page_count": result.get("page_count")}
        document = self.lifecycle.advance(
            document["document_id"],
            from_status=stage,
            job_id=job["job_id"],
            fields=fields,
        )
        if document is None:
            return None
        return self._resume(document)

    def _run_inline_index(self, document: dict[str, Any]) -> dict[str, Any] | None:
        document_id = document["document_id"]
        executor = self.registry.get(INDEX_CAPABILITY)
        if executor is None:
            advanced = self.lifecycle.advance(document_id, from_status="indexing")
            return self._resume(advanced) if advanced is not None else None
        chunk_job = self.store.latest_job(document_id=document_id, job_type="chunk") or {}
        embed_job = self.store.latest_job(document_id=document_id, job_type="embed") or {}
        payload = IndexPayload(
            document_id=document_id,
            owner_id=document["owner_id"],
            chunk_count=int((chunk_job.get("result") or {}).get("chunk_count") or 0),
            embedding_model=(embed_job.get("payload") or {}).get("embedding_model") or "text-embedding-3-small",
        )
        # No job record backs the inline stage, so transient errors are retried in place without a delay.
        max_attempts = self.retry_policy.max_attempts_for(INDEX_CAPABILITY)
        attempts = 0
        while True:
            outcome = run_executor(executor, INDEX_CAPABILITY, payload, label=f"document_id={document_id}")
            if outcome.success:
                break
            error = outcome.error or StageError(retryable=True, message="index failed")
            decision = self.retry_policy.decide(
                attempts=attempts,
                max_attempts=max_attempts,
                retryable=error.retryable,
                now=self.clock(),
            )
            attempts = decision.attempts
            if decision.terminal:
                return self.lifecycle.mark_failed(document_id, from_status="indexing", error=error.message)
            logger.warning(
                "index_retry document_id=%s attempts=%s error=%s",
                document_id,
                attempts,
                error.message,
            )
        advanced = self.lifecycle.advance(document_id, from_status="indexing")
        if advanced is None:
            return None
        return self._resume(advanced)

    def fail(self, *, job: dict[str, Any], error: StageError) -> dict[str, Any] | None:
        decision = self.retry_policy.decide(
            attempts=int(job["attempts"]),
            max_attempts=int(job["max_attempts"]),
            retryable=error.retryable,
            now=self.clock(),
        )
        updated = self.store.fail_job(
            job_id=job["job_id"],
            error=error.message,
            retry_at=None if decision.terminal else decision.retry_at,
        )
        if updated is None:
            logger.warning("job_failure_discarded job_id=%s document_id=%s", job["job_id"], job["document_id"])
            return None
        if not decision.terminal:
            logger.warning(
                "job_retry_scheduled job_id=%s job_type=%s attempts=%s delay_s=%.1f error=%s",
                job["job_id"],
                job["job_type"],
                decision.attempts,
                decision.delay_seconds,
                error.message,
            )
            return updated
        logger.warning(
            "job_failed job_id=%s job_type=%s attempts=%s retryable=%s error=%s",
            job["job_id"],
            job["job_type"],
            decision.attempts,
            error.retryable,
            error.message,
        )
        self._fail_document(updated)
        return updated

    def _fail_document(self, job: dict[str, Any]) -> dict[str, Any] | None:
        document = self.store.get_document(document_id=job["document_id"])
        if document is None or document.get("cancelled_at"):
            return None
        if document["status"] == "uploaded" and job["job_type"] == "parse":
            self._ensure_started(document["document_id"], job_id=job["job_id"])
            document = self._require_document(document["document_id"])
        stage = JOB_TYPE_STAGE[job["job_type"]]
        if document["status"] != stage:
            return None
        return self.lifecycle.mark_failed(
            document["document_id"],
            from_status=stage,
            error=str(job.get("last_error") or "stage failed"),
            job_id=job["job_id"],
        )

    # recovery

    def release_stale_jobs(self, *, stale_after_seconds: int) -> list[dict[str, Any]]:
        older_than = self.clock() - timedelta(seconds=max(0, int(stale_after_seconds)))
        released = self.store.release_stale_jobs(older_than=older_than)
        for job in released:
            logger.warning(
                "job_released_stale job_id=%s document_id=%s job_type=%s",
                job["job_id"],
                job["document_id"],
                job["job_type"],
            )
        return released

    def reconcile_document(self, document_id: str) -> dict[str, Any]:
        document = self._require_document(document_id)
        action = "none"
        if document["status"] in TERMINAL_DOCUMENT_STATUSES or document.get("cancelled_at"):
            pass
        elif document["status"] == "uploaded":
            self.on_document_created(document_id)
            action = "started"
        elif document["status"] in INLINE_STAGES:
            self._run_inline_index(document)
            action = "indexed"
        else:
            job_type = self.resolver.job_type_for(document)
            latest = self.store.latest_job(document_id=document_id, job_type=job_type) if job_type else None
            if latest is not None and latest["status"] == "succeeded":
                self._apply_success(latest)
                action = "advanced"
            elif latest is not None and latest["status"] == "failed":
                self._fail_document(latest)
                action = "failed"
            elif latest is None or latest["status"] == "cancelled":
                if self._schedule_next(document) is not None:
                    action = "enqueued"
        logger.info("document_reconciled document_id=%s action=%s", document_id, action)
        data = self.get_status(document_id)
        data["action"] = action
        return data

    def metrics_summary(self) -> dict[str, Any]:
        return {
            "store_backend": self.store.backend_name,
            "jobs_by_type": self.store.count_jobs_by_status(),
            "executors": self.registry.registered(),
            "priorities": dict(self.resolver.priorities),
            "retry": {
                "base_seconds": self.retry_policy.base_seconds,
                "max_seconds": self.retry_policy.max_seconds,
                "max_attempts": self.retry_policy.max_attempts,
                "max_attempts_by_type": dict(self.retry_policy.max_attempts_by_type),
            },
        }


def _create_store_for_runtime(environ: Mapping[str, str] | None = None) -> Any:
    env = os.environ if environ is None else environ
    try:
        return create_store_from_env(env)
    except RuntimeError:
        if true_stack_required(env):
            raise
        return InMemoryJobStore()


def create_pipeline_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    store: Any | None = None,
    registry: ExecutorRegistry | None = None,
) -> DocumentPipeline:
    env = os.environ if environ is None else environ
    if registry is None:
        mock_enabled = env_bool(env, "DOCPIPE_MOCK_EXECUTORS", default=True)
        registry = build_mock_registry() if mock_enabled else ExecutorRegistry()
    return DocumentPipeline(
        store=store if store is not None else _create_store_for_runtime(env),
        registry=registry,
        resolver=StageResolver.from_env(env),
        retry_policy=RetryPolicy.from_env(env),
    )


pipeline = create_pipeline_from_env()
