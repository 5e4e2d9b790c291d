from __future__ import annotations

import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from docpipe.pipeline import pipeline
from docpipe.routes._deps import trace_id_from_request
from docpipe.schemas import CreateDocumentRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["documents"])


@router.post("/documents")
def create_document(payload: CreateDocumentRequest, request: Request):
    data = pipeline.register_document(
        document_id=payload.document_id or f"doc_{uuid.uuid4().hex[:12]}",
        owner_id=payload.owner_id,
        file_type=payload.file_type,
        storage_path=payload.storage_path,
        filename=payload.filename,
        title=payload.title,
    )
    return JSONResponse(
        status_code=202,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/documents/{document_id}/status")
def get_document_status(document_id: str, request: Request):
    return success_envelope(pipeline.get_status(document_id), trace_id_from_request(request))


@router.get("/documents/{document_id}/events")
def list_document_events(document_id: str, request: Request):
    items = pipeline.list_status_events(document_id)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/documents/{document_id}/cancel")
def cancel_document(document_id: str, request: Request):
    return success_envelope(
        pipeline.cancel_document(document_id),
        trace_id_from_request(request),
        message="cancelled",
    )
