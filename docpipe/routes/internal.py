from __future__ import annotations

from fastapi import APIRouter, Header, Request

from docpipe.pipeline import pipeline
from docpipe.routes._deps import require_internal_debug, trace_id_from_request
from docpipe.schemas import ReleaseStaleRequest, success_envelope
from docpipe.worker_runtime import WorkerSettings

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/documents/{document_id}/retry")
def internal_retry_document(
    document_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    return success_envelope(
        pipeline.retry_document(document_id),
        trace_id_from_request(request),
        message="retry scheduled",
    )


@router.post("/documents/{document_id}/reconcile")
def internal_reconcile_document(
    document_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    return success_envelope(pipeline.reconcile_document(document_id), trace_id_from_request(request))


@router.post("/jobs/release-stale")
def internal_release_stale_jobs(
    request: Request,
    payload: ReleaseStaleRequest | None = None,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    stale_after = payload.stale_after_seconds if payload is not None else None
    if stale_after is None:
        stale_after = WorkerSettings.from_env().stale_after_seconds
    released = pipeline.release_stale_jobs(stale_after_seconds=stale_after)
    return success_envelope(
        {
            "stale_after_seconds": stale_after,
            "released": [job["job_id"] for job in released],
            "total": len(released),
        },
        trace_id_from_request(request),
    )


@router.get("/ops/metrics/summary")
def internal_get_ops_metrics_summary(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = pipeline.metrics_summary()
    data["worker"] = WorkerSettings.from_env().as_dict()
    return success_envelope(data, trace_id_from_request(request))
