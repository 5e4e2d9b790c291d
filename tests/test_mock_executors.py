from __future__ import annotations

import pytest

from docpipe.executors import INDEX_CAPABILITY, ExecutorRegistry, StageOutcome
from docpipe.mock_executors import MockStageExecutor, build_mock_registry
from docpipe.payloads import ParsePayload, SummarizePayload


def _parse_payload(**overrides) -> ParsePayload:
    data = {
        "document_id": "doc_1",
        "owner_id": "user_1",
        "storage_path": "uploads/doc_1.pdf",
        "file_type": "pdf",
    }
    data.update(overrides)
    return ParsePayload(**data)


def test_mock_parse_is_deterministic_per_document():
    executor = MockStageExecutor()
    first = executor.execute("parse", _parse_payload())
    second = executor.execute("parse", _parse_payload())
    assert first == second
    assert first.success is True
    assert first.needs_ocr is False
    assert 1 <= first.result["page_count"] <= 40


def test_mock_parse_flags_images_for_ocr():
    outcome = MockStageExecutor().execute("parse", _parse_payload(file_type="image"))
    assert outcome.needs_ocr is True
    assert outcome.result["text_chars"] == 0


def test_mock_parse_rejects_missing_file():
    outcome = MockStageExecutor().execute("parse", _parse_payload(storage_path=""))
    assert outcome.success is False
    assert outcome.error.retryable is False


def test_scripted_outcomes_are_consumed_in_order():
    executor = MockStageExecutor()
    executor.script("summarize", StageOutcome.transient("rate limited"), ValueError("bad prompt"))
    payload = SummarizePayload(document_id="doc_1", owner_id="user_1")

    assert executor.execute("summarize", payload).error.message == "rate limited"
    with pytest.raises(ValueError, match="bad prompt"):
        executor.execute("summarize", payload)
    assert executor.execute("summarize", payload).result["summary"].startswith("summary:")
    assert executor.calls == [("summarize", "doc_1")] * 3


def test_registry_rejects_unknown_job_types():
    registry = ExecutorRegistry()
    with pytest.raises(ValueError, match="unknown job type"):
        registry.register("translate", MockStageExecutor())


def test_mock_registry_covers_every_stage():
    registry = build_mock_registry()
    assert registry.registered() == sorted(
        ["chunk", "embed", INDEX_CAPABILITY, "ocr", "parse", "quiz_generate", "summarize"]
    )
    assert build_mock_registry(include_index=False).has_index() is False
