from __future__ import annotations

import logging
from typing import Any

from docpipe.errors import InvalidTransition, not_found
from docpipe.states import (
    DOCUMENT_SEQUENCE,
    TERMINAL_DOCUMENT_STATUSES,
    is_forward,
    next_document_status,
)

logger = logging.getLogger(__name__)


class DocumentLifecycle:
    """Owns every write to a document's status.

    All transitions are compare-and-set against the status the caller last
    observed. A ``None`` return means another actor moved the document first
    (cancellation, a concurrent worker, an operator retry) and the caller
    should drop whatever it was about to do.
    """

    def __init__(self, *, store: Any) -> None:
        self.store = store

    def _require(self, document_id: str) -> dict[str, Any]:
        document = self.store.get_document(document_id=document_id)
        if document is None:
            raise not_found(code="DOC_NOT_FOUND", message="document not found")
        return document

    def get_status(self, document_id: str) -> dict[str, Any]:
        document = self._require(document_id)
        return {
            "document_id": document["document_id"],
            "status": document["status"],
            "last_error": document.get("last_error"),
            "page_count": document.get("page_count"),
            "failed_stage": document.get("failed_stage"),
            "cancelled": bool(document.get("cancelled_at")),
            "updated_at": document.get("updated_at"),
        }

    def start(self, document_id: str, *, job_id: str | None = None) -> dict[str, Any] | None:
        document = self._require(document_id)
        if document["status"] != "uploaded":
            raise InvalidTransition(entity="document", current=document["status"], target="parsing")
        updated = self.store.transition_document(
            document_id=document_id,
            expected_status="uploaded",
            new_status="parsing",
            job_id=job_id,
        )
        if updated is not None:
            logger.info("document_status_changed document_id=%s from=uploaded to=parsing", document_id)
        return updated

    def advance(
        self,
        document_id: str,
        *,
        from_status: str,
        job_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        target = next_document_status(from_status)
        if not is_forward(from_status, target):
            raise InvalidTransition(entity="document", current=from_status, target=target)
        updated = self.store.transition_document(
            document_id=document_id,
            expected_status=from_status,
            new_status=target,
            job_id=job_id,
            fields=fields,
        )
        if updated is None:
            logger.warning(
                "document_transition_rejected document_id=%s expected=%s target=%s",
                document_id,
                from_status,
                target,
            )
            return None
        logger.info("document_status_changed document_id=%s from=%s to=%s", document_id, from_status, target)
        return updated

    def record_stage_output(self, document_id: str, *, fields: dict[str, Any]) -> dict[str, Any] | None:
        return self.store.update_document(document_id=document_id, fields=fields)

    def mark_failed(
        self,
        document_id: str,
        *,
        from_status: str,
        error: str,
        job_id: str | None = None,
    ) -> dict[str, Any] | None:
        if from_status in TERMINAL_DOCUMENT_STATUSES:
            raise InvalidTransition(entity="document", current=from_status, target="failed")
        updated = self.store.transition_document(
            document_id=document_id,
            expected_status=from_status,
            new_status="failed",
            job_id=job_id,
            fields={"last_error": error, "failed_stage": from_status},
        )
        if updated is not None:
            logger.warning(
                "document_failed document_id=%s stage=%s error=%s",
                document_id,
                from_status,
                error,
            )
        return updated

    def reset_for_retry(self, document_id: str) -> dict[str, Any] | None:
        document = self._require(document_id)
        if document["status"] != "failed":
            raise InvalidTransition(entity="document", current=document["status"], target="retry")
        stage = document.get("failed_stage") or "parsing"
        if stage not in DOCUMENT_SEQUENCE or stage in {"uploaded", "ready"}:
            stage = "parsing"
        updated = self.store.transition_document(
            document_id=document_id,
            expected_status="failed",
            new_status=stage,
            fields={"last_error": None, "failed_stage": None},
        )
        if updated is not None:
            logger.info("document_retry_reset document_id=%s to=%s", document_id, stage)
        return updated

    def mark_cancelled(self, document_id: str) -> list[dict[str, Any]] | None:
        """Stamp ``cancelled_at`` and cancel active jobs in one store write.

        Status is left as is; every later transition is refused by the store.
        Returns the cancelled jobs, or None when the document was already
        cancelled or terminal.
        """
        cancelled = self.store.cancel_document(document_id=document_id)
        if cancelled is not None:
            logger.info("document_cancelled document_id=%s cancelled_jobs=%s", document_id, len(cancelled))
        return cancelled
