from __future__ import annotations

from fastapi import APIRouter, Query, Request

from docpipe.errors import ApiError, not_found
from docpipe.pipeline import pipeline
from docpipe.routes._deps import trace_id_from_request
from docpipe.schemas import success_envelope
from docpipe.states import JOB_STATUSES, JOB_TYPES

router = APIRouter(prefix="/api/v1", tags=["jobs"])


def _invalid_filter(name: str, value: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=f"unknown {name}: {value}",
        error_class="validation",
        retryable=False,
        http_status=400,
    )


@router.get("/jobs")
def list_jobs(
    request: Request,
    document_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    job_type: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
):
    if status and status not in JOB_STATUSES:
        raise _invalid_filter("status", status)
    if job_type and job_type not in JOB_TYPES:
        raise _invalid_filter("job_type", job_type)
    data = pipeline.store.list_jobs(
        document_id=document_id,
        status=status,
        job_type=job_type,
        cursor=cursor,
        limit=limit,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    job = pipeline.store.get_job(job_id=job_id)
    if job is None:
        raise not_found(code="JOB_NOT_FOUND", message="job not found")
    return success_envelope(job, trace_id_from_request(request))
