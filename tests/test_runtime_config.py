from __future__ import annotations

import pytest

from docpipe.pipeline import _create_store_for_runtime, create_pipeline_from_env
from docpipe.runtime_profile import env_bool, env_float, env_int, true_stack_required
from docpipe.store import InMemoryJobStore
from docpipe.store_backends import SqliteJobStore


def test_env_helpers_fall_back_on_blank_or_invalid_values():
    env = {"A": "7", "B": "", "C": "x", "D": "-3", "F": "2.5", "T": "yes"}
    assert env_int(env, "A", default=1) == 7
    assert env_int(env, "B", default=1) == 1
    assert env_int(env, "C", default=1) == 1
    assert env_int(env, "D", default=1, minimum=0) == 0
    assert env_float(env, "F", default=1.0) == 2.5
    assert env_bool(env, "T", default=False) is True
    assert env_bool(env, "missing", default=True) is True


def test_true_stack_flag():
    assert true_stack_required({"DOCPIPE_REQUIRE_TRUESTACK": "true"}) is True
    assert true_stack_required({}) is False


def test_runtime_store_falls_back_to_memory_unless_true_stack_required():
    assert isinstance(_create_store_for_runtime({"DOCPIPE_STORE_BACKEND": "redis"}), InMemoryJobStore)
    with pytest.raises(RuntimeError):
        _create_store_for_runtime({"DOCPIPE_STORE_BACKEND": "redis", "DOCPIPE_REQUIRE_TRUESTACK": "1"})


def test_pipeline_from_env_wires_store_policy_and_executors(tmp_path):
    pipe = create_pipeline_from_env(
        {
            "DOCPIPE_STORE_BACKEND": "sqlite",
            "DOCPIPE_SQLITE_PATH": str(tmp_path / "pipe.sqlite3"),
            "DOCPIPE_MAX_ATTEMPTS": "5",
            "DOCPIPE_PRIORITY_PARSE": "70",
            "DOCPIPE_MOCK_EXECUTORS": "false",
        }
    )
    assert isinstance(pipe.store, SqliteJobStore)
    assert pipe.retry_policy.max_attempts == 5
    assert pipe.resolver.priority_for("parse") == 70
    assert pipe.registry.registered() == []


def test_sqlite_pipeline_runs_end_to_end(tmp_path, register, run_until_idle):
    pipe = create_pipeline_from_env(
        {"DOCPIPE_STORE_BACKEND": "sqlite", "DOCPIPE_SQLITE_PATH": str(tmp_path / "e2e.sqlite3")}
    )
    register(pipe, file_type="image")
    run_until_idle(pipe)
    assert pipe.get_status("doc_1")["status"] == "ready"
    events = pipe.list_status_events("doc_1")
    assert [e["to_status"] for e in events][-1] == "ready"
    assert len(events) == 7
