from __future__ import annotations

from datetime import UTC, datetime

import pytest

from docpipe.errors import ApiError, DocumentCancelled, DuplicateActiveJob
from docpipe.store import InMemoryJobStore, JOB_FIELDS
from docpipe.store_backends import PostgresJobStore, SqliteJobStore, create_store_from_env


def _job_row(**overrides) -> tuple:
    now = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
    row = {
        "job_id": "job_pg_1",
        "document_id": "doc_1",
        "owner_id": "user_1",
        "job_type": "parse",
        "status": "processing",
        "priority": 60,
        "attempts": 0,
        "max_attempts": 3,
        "run_after": None,
        "payload": {"document_id": "doc_1", "owner_id": "user_1", "job_type": "parse"},
        "result": None,
        "last_error": None,
        "worker_id": "w1",
        "started_at": now,
        "finished_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return tuple(row[field] for field in JOB_FIELDS)


class FakeCursor:
    def __init__(self, row=None, rowcount: int = 1):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [] if self._row is None else [self._row]


class FakeConnection:
    def __init__(self, responses: list[FakeCursor]):
        self.statements: list[tuple[str, tuple]] = []
        self._responses = responses

    def execute(self, query: str, params=()):
        self.statements.append((query, params))
        if self._responses:
            return self._responses.pop(0)
        return FakeCursor()


class FakeRunner:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.calls = 0

    def run_in_tx(self, *, fn):
        self.calls += 1
        return fn(self.conn)


def test_postgres_store_creates_schema_with_partial_unique_index():
    conn = FakeConnection([])
    PostgresJobStore(tx_runner=FakeRunner(conn))
    schema_sql = conn.statements[0][0]
    assert "CREATE UNIQUE INDEX IF NOT EXISTS jobs_one_active_per_stage" in schema_sql
    assert "WHERE status IN ('queued', 'processing')" in schema_sql
    assert "document_status_events" in schema_sql


def test_postgres_claim_uses_skip_locked_and_native_placeholders():
    conn = FakeConnection([FakeCursor(row=_job_row())])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)

    claimed = store.claim_next(worker_id="w1")

    query, params = conn.statements[0]
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "RETURNING" in query
    assert "?" not in query
    assert "%s" in query
    assert params[0] == "w1"
    assert claimed["job_id"] == "job_pg_1"
    assert claimed["status"] == "processing"
    assert claimed["started_at"] == "2026-03-01T09:00:00.000000+00:00"
    assert claimed["payload"]["job_type"] == "parse"


def test_postgres_claim_returns_none_when_queue_is_empty():
    conn = FakeConnection([FakeCursor(row=None)])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)
    assert store.claim_next(worker_id="w1") is None


def test_postgres_enqueue_conflict_raises_duplicate_active_job():
    conn = FakeConnection([FakeCursor(row=(None,)), FakeCursor(row=None)])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)

    with pytest.raises(DuplicateActiveJob):
        store.enqueue(
            document_id="doc_1",
            owner_id="user_1",
            job_type="parse",
            priority=60,
            payload={"document_id": "doc_1"},
            max_attempts=3,
        )
    insert_sql = conn.statements[1][0]
    assert "ON CONFLICT (document_id, job_type) WHERE status IN ('queued', 'processing') DO NOTHING" in insert_sql


def test_postgres_enqueue_refuses_cancelled_documents_under_a_share_lock():
    conn = FakeConnection([FakeCursor(row=(datetime(2026, 3, 1, 9, 0, tzinfo=UTC),))])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)

    with pytest.raises(DocumentCancelled):
        store.enqueue(
            document_id="doc_1",
            owner_id="user_1",
            job_type="chunk",
            priority=50,
            payload={"document_id": "doc_1"},
            max_attempts=3,
        )
    assert len(conn.statements) == 1
    assert conn.statements[0][0].rstrip().endswith("FOR SHARE")


def test_postgres_create_document_conflict_maps_to_already_exists():
    conn = FakeConnection([FakeCursor(rowcount=0)])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)

    with pytest.raises(ApiError) as exc_info:
        store.create_document(
            document={"document_id": "doc_1", "owner_id": "user_1", "file_type": "pdf", "storage_path": "a.pdf"}
        )
    assert exc_info.value.code == "DOC_ALREADY_EXISTS"
    assert exc_info.value.http_status == 409
    assert len(conn.statements) == 1
    assert "ON CONFLICT (document_id) DO NOTHING" in conn.statements[0][0]


def test_postgres_transition_skips_cancelled_documents():
    conn = FakeConnection([FakeCursor(rowcount=0)])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)

    moved = store.transition_document(document_id="doc_1", expected_status="parsing", new_status="chunking")

    assert moved is None
    assert "cancelled_at IS NULL" in conn.statements[0][0]


def test_postgres_complete_job_is_conditional_on_processing():
    conn = FakeConnection([FakeCursor(rowcount=0)])
    store = PostgresJobStore(tx_runner=FakeRunner(conn), ensure_schema=False)

    assert store.complete_job(job_id="job_pg_1", result={"ok": True}) is None
    query, params = conn.statements[0]
    assert "status = 'processing'" in query
    assert params[-1] == "job_pg_1"


def test_create_store_from_env_selects_backend(tmp_path):
    assert isinstance(create_store_from_env({}), InMemoryJobStore)
    sqlite_store = create_store_from_env(
        {"DOCPIPE_STORE_BACKEND": "sqlite", "DOCPIPE_SQLITE_PATH": str(tmp_path / "x.sqlite3")}
    )
    assert isinstance(sqlite_store, SqliteJobStore)
    assert sqlite_store.backend_name == "sqlite"


def test_create_store_from_env_validates_configuration():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"DOCPIPE_STORE_BACKEND": "postgres"})
    with pytest.raises(RuntimeError, match="must be postgres"):
        create_store_from_env({"DOCPIPE_STORE_BACKEND": "memory", "DOCPIPE_REQUIRE_TRUESTACK": "true"})
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({"DOCPIPE_STORE_BACKEND": "redis"})
