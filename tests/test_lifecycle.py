from __future__ import annotations

import pytest

from docpipe.errors import ApiError, InvalidTransition
from docpipe.lifecycle import DocumentLifecycle
from docpipe.states import DOCUMENT_SEQUENCE, is_forward, next_document_status
from docpipe.store import InMemoryJobStore


@pytest.fixture
def lifecycle(clock) -> DocumentLifecycle:
    store = InMemoryJobStore(clock=clock)
    store.create_document(
        document={"document_id": "doc_1", "owner_id": "user_1", "file_type": "pdf", "storage_path": "a.pdf"}
    )
    return DocumentLifecycle(store=store)


def test_status_order_only_moves_forward():
    assert next_document_status("embedding") == "indexing"
    assert is_forward("parsing", "ready")
    assert not is_forward("summarizing", "chunking")
    with pytest.raises(ValueError):
        next_document_status("ready")


def test_walks_the_full_sequence(lifecycle):
    lifecycle.start("doc_1")
    for status in DOCUMENT_SEQUENCE[1:-1]:
        assert lifecycle.advance("doc_1", from_status=status) is not None
    assert lifecycle.get_status("doc_1")["status"] == "ready"
    events = lifecycle.store.list_status_events(document_id="doc_1")
    assert [e["to_status"] for e in events] == list(DOCUMENT_SEQUENCE[1:])


def test_start_requires_uploaded(lifecycle):
    lifecycle.start("doc_1")
    with pytest.raises(InvalidTransition) as exc_info:
        lifecycle.start("doc_1")
    assert exc_info.value.code == "WF_STATE_TRANSITION_INVALID"
    assert exc_info.value.http_status == 409


def test_advance_from_a_stale_status_is_rejected(lifecycle):
    lifecycle.start("doc_1")
    lifecycle.advance("doc_1", from_status="parsing")
    assert lifecycle.advance("doc_1", from_status="parsing") is None
    assert lifecycle.get_status("doc_1")["status"] == "chunking"


def test_mark_failed_records_stage_and_error(lifecycle):
    lifecycle.start("doc_1")
    lifecycle.advance("doc_1", from_status="parsing")
    failed = lifecycle.mark_failed("doc_1", from_status="chunking", error="empty text")
    assert failed["status"] == "failed"
    assert failed["failed_stage"] == "chunking"
    assert failed["last_error"] == "empty text"


def test_terminal_statuses_cannot_fail_again(lifecycle):
    lifecycle.start("doc_1")
    lifecycle.mark_failed("doc_1", from_status="parsing", error="corrupt")
    with pytest.raises(InvalidTransition):
        lifecycle.mark_failed("doc_1", from_status="failed", error="again")


def test_reset_for_retry_returns_to_failed_stage(lifecycle):
    lifecycle.start("doc_1")
    lifecycle.advance("doc_1", from_status="parsing")
    lifecycle.advance("doc_1", from_status="chunking")
    lifecycle.mark_failed("doc_1", from_status="embedding", error="rate limited")

    reset = lifecycle.reset_for_retry("doc_1")
    assert reset["status"] == "embedding"
    assert reset["last_error"] is None
    assert reset["failed_stage"] is None


def test_reset_for_retry_requires_failed(lifecycle):
    with pytest.raises(InvalidTransition):
        lifecycle.reset_for_retry("doc_1")


def test_unknown_document_raises_not_found(lifecycle):
    with pytest.raises(ApiError) as exc_info:
        lifecycle.get_status("missing")
    assert exc_info.value.code == "DOC_NOT_FOUND"
    assert exc_info.value.http_status == 404
