from __future__ import annotations

import pytest

from docpipe.payloads import ChunkPayload, OcrPayload, ParsePayload, load_payload
from docpipe.resolver import DEFAULT_PRIORITIES, StageResolver, next_job_for


def _doc(status: str, **extra) -> dict:
    base = {
        "document_id": "doc_1",
        "owner_id": "user_1",
        "status": status,
        "file_type": "pdf",
        "storage_path": "uploads/doc_1.pdf",
        "filename": "doc_1.pdf",
        "needs_ocr": None,
        "page_count": None,
        "cancelled_at": None,
    }
    base.update(extra)
    return base


@pytest.mark.parametrize(
    ("status", "job_type"),
    [
        ("uploaded", "parse"),
        ("parsing", "parse"),
        ("chunking", "chunk"),
        ("embedding", "embed"),
        ("summarizing", "summarize"),
        ("quiz_generating", "quiz_generate"),
    ],
)
def test_each_working_status_maps_to_its_job(status, job_type):
    spec = next_job_for(_doc(status))
    assert spec is not None
    assert spec.job_type == job_type
    assert spec.priority == DEFAULT_PRIORITIES[job_type]
    assert spec.payload_dict()["job_type"] == job_type


@pytest.mark.parametrize("status", ["indexing", "ready", "failed"])
def test_statuses_without_a_job_resolve_to_none(status):
    assert next_job_for(_doc(status)) is None


def test_cancelled_documents_get_no_work():
    assert next_job_for(_doc("chunking", cancelled_at="2026-03-01T00:00:00+00:00")) is None


def test_parsing_with_ocr_flag_resolves_to_ocr():
    spec = next_job_for(_doc("parsing", needs_ocr=True, page_count=4, file_type="image"))
    assert spec.job_type == "ocr"
    assert isinstance(spec.payload, OcrPayload)
    assert spec.payload.page_count == 4


def test_chunk_payload_carries_ocr_usage():
    spec = next_job_for(_doc("chunking", needs_ocr=True, page_count=9))
    assert isinstance(spec.payload, ChunkPayload)
    assert spec.payload.ocr_used is True
    assert spec.payload.page_count == 9


def test_resolver_is_deterministic():
    document = _doc("parsing")
    assert next_job_for(document) == next_job_for(document)


def test_payload_round_trips_through_the_tagged_union():
    spec = next_job_for(_doc("uploaded"))
    loaded = load_payload(spec.payload_dict())
    assert isinstance(loaded, ParsePayload)
    assert loaded.storage_path == "uploads/doc_1.pdf"


def test_priorities_are_configurable_from_env():
    resolver = StageResolver.from_env({"DOCPIPE_PRIORITY_EMBED": "99"})
    assert resolver.next_job_for(_doc("embedding")).priority == 99
    assert resolver.next_job_for(_doc("chunking")).priority == 40


def test_default_priorities_drain_earlier_stages_first():
    order = sorted(DEFAULT_PRIORITIES, key=DEFAULT_PRIORITIES.get, reverse=True)
    assert order == ["parse", "ocr", "chunk", "embed", "summarize", "quiz_generate"]


def test_resolving_twice_enqueues_one_job(local_pipeline, register):
    register(local_pipeline)
    document = local_pipeline.store.get_document(document_id="doc_1")
    assert local_pipeline._schedule_next(document) is None
    assert local_pipeline.store.list_jobs(document_id="doc_1")["total"] == 1
