from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class InvalidTransition(ApiError):
    def __init__(self, *, entity: str, current: str, target: str) -> None:
        super().__init__(
            code="WF_STATE_TRANSITION_INVALID",
            message=f"invalid {entity} transition: {current} -> {target}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
        self.current = current
        self.target = target


class DuplicateActiveJob(Exception):
    """Raised by enqueue when a queued/processing job already exists for the stage."""

    def __init__(self, *, document_id: str, job_type: str) -> None:
        super().__init__(f"active {job_type} job already exists for document {document_id}")
        self.document_id = document_id
        self.job_type = job_type


class DocumentCancelled(Exception):
    """Raised by enqueue once the document has been cancelled."""

    def __init__(self, *, document_id: str) -> None:
        super().__init__(f"document {document_id} is cancelled")
        self.document_id = document_id


def not_found(*, code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
    )
