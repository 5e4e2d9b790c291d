from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from docpipe.db.postgres import PostgresTxRunner
from docpipe.errors import ApiError, DocumentCancelled, DuplicateActiveJob
from docpipe.runtime_profile import true_stack_required
from docpipe.store import (
    DOCUMENT_FIELDS,
    JOB_FIELDS,
    InMemoryJobStore,
    check_document_fields,
    new_job_id,
    to_iso,
    utcnow,
)

_JOB_COLUMNS = ", ".join(JOB_FIELDS)
_DOCUMENT_COLUMNS = ", ".join(DOCUMENT_FIELDS)
_EVENT_FIELDS = ("seq", "document_id", "from_status", "to_status", "job_id", "occurred_at")
_TIMESTAMP_FIELDS = {"run_after", "started_at", "finished_at", "created_at", "updated_at", "cancelled_at", "occurred_at"}

_CLAIM_ORDER = "priority DESC, run_after ASC NULLS FIRST, created_at ASC, seq ASC"


def _json_load(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _json_dump(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


class _SqlJobStore:
    """Shared SQL for the durable backends.

    Statements are written with ``?`` placeholders; subclasses translate them
    and supply the transaction runner plus the two dialect-specific writes
    (claim and duplicate-guarded insert).
    """

    backend_name = "sql"
    placeholder = "?"

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def _run(self, fn: Callable[[Any], Any]) -> Any:
        raise NotImplementedError

    def _sql(self, statement: str) -> str:
        if self.placeholder == "?":
            return statement
        return statement.replace("?", self.placeholder)

    def _ts(self, value: datetime | None) -> Any:
        return to_iso(value)

    def _now(self) -> Any:
        return self._ts(self.clock())

    def _execute(self, conn: Any, statement: str, params: tuple[Any, ...] = ()) -> Any:
        return conn.execute(self._sql(statement), params)

    @staticmethod
    def _row_to_dict(fields: tuple[str, ...], row: Any) -> dict[str, Any]:
        item = dict(zip(fields, tuple(row)))
        for key in _TIMESTAMP_FIELDS & set(item):
            item[key] = to_iso(item[key])
        return item

    def _job_from_row(self, row: Any) -> dict[str, Any] | None:
        if row is None:
            return None
        job = self._row_to_dict(JOB_FIELDS, row)
        job["payload"] = _json_load(job["payload"]) or {}
        job["result"] = _json_load(job["result"])
        job["priority"] = int(job["priority"])
        job["attempts"] = int(job["attempts"])
        job["max_attempts"] = int(job["max_attempts"])
        return job

    def _document_from_row(self, row: Any) -> dict[str, Any] | None:
        if row is None:
            return None
        document = self._row_to_dict(DOCUMENT_FIELDS, row)
        if document["needs_ocr"] is not None:
            document["needs_ocr"] = bool(document["needs_ocr"])
        return document

    def _select_job(self, conn: Any, job_id: str) -> dict[str, Any] | None:
        row = self._execute(conn, f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return self._job_from_row(row)

    def _select_document(self, conn: Any, document_id: str) -> dict[str, Any] | None:
        row = self._execute(
            conn,
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE document_id = ?",
            (document_id,),
        ).fetchone()
        return self._document_from_row(row)

    def _document_params(self, fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
        assignments: list[str] = []
        params: list[Any] = []
        for key in sorted(fields):
            value = fields[key]
            if key == "cancelled_at":
                value = self._ts(value) if isinstance(value, datetime) else value
            assignments.append(f"{key} = ?")
            params.append(value)
        return assignments, params

    # documents

    def create_document(self, *, document: dict[str, Any]) -> dict[str, Any]:
        def _op(conn: Any) -> dict[str, Any]:
            now = self._now()
            cur = self._execute(
                conn,
                """
                INSERT INTO documents (
                    document_id, owner_id, title, filename, file_type, storage_path, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'uploaded', ?, ?)
                ON CONFLICT (document_id) DO NOTHING
                """,
                (
                    str(document["document_id"]),
                    str(document["owner_id"]),
                    str(document.get("title") or ""),
                    str(document.get("filename") or ""),
                    str(document["file_type"]),
                    str(document.get("storage_path") or ""),
                    now,
                    now,
                ),
            )
            if cur.rowcount != 1:
                raise ApiError(
                    code="DOC_ALREADY_EXISTS",
                    message="document already exists",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            return self._select_document(conn, str(document["document_id"]))  # type: ignore[return-value]

        return self._run(_op)

    def get_document(self, *, document_id: str) -> dict[str, Any] | None:
        return self._run(lambda conn: self._select_document(conn, document_id))

    def transition_document(
        self,
        *,
        document_id: str,
        expected_status: str,
        new_status: str,
        job_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        updates = check_document_fields(fields)

        def _op(conn: Any) -> dict[str, Any] | None:
            now = self._now()
            assignments, params = self._document_params(updates)
            statement = (
                "UPDATE documents SET "
                + ", ".join(["status = ?", "updated_at = ?", *assignments])
                + " WHERE document_id = ? AND status = ? AND cancelled_at IS NULL"
            )
            cur = self._execute(conn, statement, (new_status, now, *params, document_id, expected_status))
            if cur.rowcount != 1:
                return None
            self._execute(
                conn,
                """
                INSERT INTO document_status_events (document_id, from_status, to_status, job_id, occurred_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (document_id, expected_status, new_status, job_id, now),
            )
            return self._select_document(conn, document_id)

        return self._run(_op)

    def update_document(self, *, document_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        updates = check_document_fields(fields)

        def _op(conn: Any) -> dict[str, Any] | None:
            assignments, params = self._document_params(updates)
            statement = (
                "UPDATE documents SET " + ", ".join(["updated_at = ?", *assignments]) + " WHERE document_id = ?"
            )
            cur = self._execute(conn, statement, (self._now(), *params, document_id))
            if cur.rowcount != 1:
                return None
            return self._select_document(conn, document_id)

        return self._run(_op)

    def cancel_document(self, *, document_id: str) -> list[dict[str, Any]] | None:
        def _op(conn: Any) -> list[dict[str, Any]] | None:
            now = self._now()
            cur = self._execute(
                conn,
                """
                UPDATE documents SET cancelled_at = ?, updated_at = ?
                WHERE document_id = ? AND cancelled_at IS NULL AND status NOT IN ('ready', 'failed')
                """,
                (now, now, document_id),
            )
            if cur.rowcount != 1:
                return None
            return self._cancel_jobs(conn, document_id)

        return self._run(_op)

    def list_status_events(self, *, document_id: str) -> list[dict[str, Any]]:
        def _op(conn: Any) -> list[dict[str, Any]]:
            rows = self._execute(
                conn,
                f"""
                SELECT {", ".join(_EVENT_FIELDS)}
                FROM document_status_events
                WHERE document_id = ?
                ORDER BY seq ASC
                """,
                (document_id,),
            ).fetchall()
            return [self._row_to_dict(_EVENT_FIELDS, row) for row in rows or []]

        return self._run(_op)

    # jobs

    # Appended to the document read in enqueue so a concurrent cancel waits for the insert.
    document_lock = ""

    def _insert_job(self, conn: Any, job: dict[str, Any]) -> bool:
        raise NotImplementedError

    def enqueue(
        self,
        *,
        document_id: str,
        owner_id: str,
        job_type: str,
        priority: int,
        payload: dict[str, Any],
        max_attempts: int,
        run_after: datetime | None = None,
    ) -> dict[str, Any]:
        now = self._now()
        job = {
            "job_id": new_job_id(),
            "document_id": document_id,
            "owner_id": owner_id,
            "job_type": job_type,
            "priority": int(priority),
            "max_attempts": int(max_attempts),
            "run_after": self._ts(run_after),
            "payload": _json_dump(payload),
            "created_at": now,
            "updated_at": now,
        }

        def _op(conn: Any) -> dict[str, Any]:
            row = self._execute(
                conn,
                f"SELECT cancelled_at FROM documents WHERE document_id = ?{self.document_lock}",
                (document_id,),
            ).fetchone()
            if row is not None and row[0] is not None:
                raise DocumentCancelled(document_id=document_id)
            if not self._insert_job(conn, job):
                raise DuplicateActiveJob(document_id=document_id, job_type=job_type)
            return self._select_job(conn, job["job_id"])  # type: ignore[return-value]

        return self._run(_op)

    def complete_job(self, *, job_id: str, result: dict[str, Any] | None) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            now = self._now()
            cur = self._execute(
                conn,
                """
                UPDATE jobs
                SET status = 'succeeded', result = ?, last_error = NULL, finished_at = ?, updated_at = ?
                WHERE job_id = ? AND status = 'processing'
                """,
                (_json_dump(result), now, now, job_id),
            )
            if cur.rowcount != 1:
                return None
            return self._select_job(conn, job_id)

        return self._run(_op)

    def fail_job(self, *, job_id: str, error: str, retry_at: datetime | None) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            now = self._now()
            if retry_at is None:
                cur = self._execute(
                    conn,
                    """
                    UPDATE jobs
                    SET status = 'failed', attempts = attempts + 1, last_error = ?, finished_at = ?, updated_at = ?
                    WHERE job_id = ? AND status = 'processing'
                    """,
                    (error, now, now, job_id),
                )
            else:
                cur = self._execute(
                    conn,
                    """
                    UPDATE jobs
                    SET status = 'queued', attempts = attempts + 1, last_error = ?, run_after = ?,
                        worker_id = NULL, updated_at = ?
                    WHERE job_id = ? AND status = 'processing'
                    """,
                    (error, self._ts(retry_at), now, job_id),
                )
            if cur.rowcount != 1:
                return None
            return self._select_job(conn, job_id)

        return self._run(_op)

    def _cancel_jobs(self, conn: Any, document_id: str) -> list[dict[str, Any]]:
        rows = self._execute(
            conn,
            "SELECT job_id FROM jobs WHERE document_id = ? AND status IN ('queued', 'processing')",
            (document_id,),
        ).fetchall()
        now = self._now()
        cancelled: list[dict[str, Any]] = []
        for row in rows or []:
            cur = self._execute(
                conn,
                """
                UPDATE jobs SET status = 'cancelled', finished_at = ?, updated_at = ?
                WHERE job_id = ? AND status IN ('queued', 'processing')
                """,
                (now, now, row[0]),
            )
            if cur.rowcount == 1:
                cancelled.append(self._select_job(conn, row[0]))  # type: ignore[arg-type]
        return cancelled

    def cancel_active_jobs(self, *, document_id: str) -> list[dict[str, Any]]:
        return self._run(lambda conn: self._cancel_jobs(conn, document_id))

    def release_stale_jobs(self, *, older_than: datetime) -> list[dict[str, Any]]:
        def _op(conn: Any) -> list[dict[str, Any]]:
            rows = self._execute(
                conn,
                "SELECT job_id FROM jobs WHERE status = 'processing' AND started_at < ?",
                (self._ts(older_than),),
            ).fetchall()
            now = self._now()
            released: list[dict[str, Any]] = []
            for row in rows or []:
                cur = self._execute(
                    conn,
                    """
                    UPDATE jobs SET status = 'queued', worker_id = NULL, updated_at = ?
                    WHERE job_id = ? AND status = 'processing'
                    """,
                    (now, row[0]),
                )
                if cur.rowcount == 1:
                    released.append(self._select_job(conn, row[0]))  # type: ignore[arg-type]
            return released

        return self._run(_op)

    def get_job(self, *, job_id: str) -> dict[str, Any] | None:
        return self._run(lambda conn: self._select_job(conn, job_id))

    def latest_job(self, *, document_id: str, job_type: str) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            row = self._execute(
                conn,
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE document_id = ? AND job_type = ?
                ORDER BY seq DESC
                LIMIT 1
                """,
                (document_id, job_type),
            ).fetchone()
            return self._job_from_row(row)

        return self._run(_op)

    def list_jobs(
        self,
        *,
        document_id: str | None = None,
        status: str | None = None,
        job_type: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("document_id", document_id), ("status", status), ("job_type", job_type)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        start = 0
        if cursor:
            try:
                start = max(0, int(cursor))
            except ValueError:
                start = 0
        limit = min(max(limit, 1), 100)

        def _op(conn: Any) -> dict[str, Any]:
            total_row = self._execute(conn, f"SELECT COUNT(1) FROM jobs {where}", tuple(params)).fetchone()
            total = int(total_row[0]) if total_row is not None else 0
            rows = self._execute(
                conn,
                f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY seq ASC LIMIT ? OFFSET ?",
                (*params, limit, start),
            ).fetchall()
            items = [self._job_from_row(row) for row in rows or []]
            next_cursor = str(start + limit) if start + limit < total else None
            return {"items": items, "total": total, "next_cursor": next_cursor}

        return self._run(_op)

    def count_jobs_by_status(self) -> dict[str, dict[str, int]]:
        def _op(conn: Any) -> dict[str, dict[str, int]]:
            rows = self._execute(
                conn,
                "SELECT job_type, status, COUNT(1) FROM jobs GROUP BY job_type, status",
            ).fetchall()
            counts: dict[str, dict[str, int]] = {}
            for job_type, status, count in rows or []:
                counts.setdefault(str(job_type), {})[str(status)] = int(count)
            return counts

        return self._run(_op)


class SqliteJobStore(_SqlJobStore):
    """SQLite-backed job store for single-host deployments and persistence tests."""

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self._lock = threading.RLock()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=30)

    def _init_db(self) -> None:
        with self._lock, self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    document_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    filename TEXT NOT NULL DEFAULT '',
                    file_type TEXT NOT NULL,
                    storage_path TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'uploaded',
                    last_error TEXT,
                    page_count INTEGER,
                    needs_ocr INTEGER,
                    failed_stage TEXT,
                    cancelled_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL UNIQUE,
                    document_id TEXT NOT NULL REFERENCES documents(document_id),
                    owner_id TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'queued',
                    priority INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    run_after TEXT,
                    payload TEXT NOT NULL,
                    result TEXT,
                    last_error TEXT,
                    worker_id TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS jobs_one_active_per_stage
                    ON jobs (document_id, job_type) WHERE status IN ('queued', 'processing');
                CREATE INDEX IF NOT EXISTS jobs_claim_idx
                    ON jobs (status, priority DESC, run_after, created_at);
                CREATE INDEX IF NOT EXISTS jobs_document_id_idx ON jobs (document_id);
                CREATE TABLE IF NOT EXISTS document_status_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    job_id TEXT,
                    occurred_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS document_status_events_document_idx
                    ON document_status_events (document_id, seq);
                """
            )
            conn.commit()

    def _run(self, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _insert_job(self, conn: Any, job: dict[str, Any]) -> bool:
        try:
            conn.execute(
                """
                INSERT INTO jobs (
                    job_id, document_id, owner_id, job_type, status, priority, attempts, max_attempts,
                    run_after, payload, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'queued', ?, 0, ?, ?, ?, ?, ?)
                """,
                (
                    job["job_id"],
                    job["document_id"],
                    job["owner_id"],
                    job["job_type"],
                    job["priority"],
                    job["max_attempts"],
                    job["run_after"],
                    job["payload"],
                    job["created_at"],
                    job["updated_at"],
                ),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    def claim_next(self, *, worker_id: str) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            now = self._now()
            row = conn.execute(
                f"""
                SELECT job_id FROM jobs
                WHERE status = 'queued' AND (run_after IS NULL OR run_after <= ?)
                ORDER BY {_CLAIM_ORDER}
                LIMIT 1
                """,
                (now,),
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute(
                """
                UPDATE jobs SET status = 'processing', worker_id = ?, started_at = ?, updated_at = ?
                WHERE job_id = ? AND status = 'queued'
                """,
                (worker_id, now, now, row[0]),
            )
            if cur.rowcount != 1:
                return None
            return self._select_job(conn, row[0])

        return self._run(_op)

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            conn.execute("DELETE FROM document_status_events")
            conn.execute("DELETE FROM jobs")
            conn.execute("DELETE FROM documents")

        self._run(_op)


POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    document_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    filename TEXT NOT NULL DEFAULT '',
    file_type TEXT NOT NULL,
    storage_path TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'uploaded',
    last_error TEXT,
    page_count INTEGER,
    needs_ocr BOOLEAN,
    failed_stage TEXT,
    cancelled_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS jobs (
    seq BIGSERIAL,
    job_id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(document_id) ON DELETE CASCADE,
    owner_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    priority SMALLINT NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    run_after TIMESTAMPTZ,
    payload JSONB NOT NULL,
    result JSONB,
    last_error TEXT,
    worker_id TEXT,
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS jobs_one_active_per_stage
    ON jobs (document_id, job_type) WHERE status IN ('queued', 'processing');
CREATE INDEX IF NOT EXISTS jobs_status_priority_idx
    ON jobs (status, priority DESC, run_after NULLS FIRST, created_at);
CREATE INDEX IF NOT EXISTS jobs_document_id_idx ON jobs (document_id);
CREATE TABLE IF NOT EXISTS document_status_events (
    seq BIGSERIAL PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(document_id) ON DELETE CASCADE,
    from_status TEXT NOT NULL,
    to_status TEXT NOT NULL,
    job_id TEXT,
    occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS document_status_events_document_idx
    ON document_status_events (document_id, seq);
"""


class PostgresJobStore(_SqlJobStore):
    """PostgreSQL job store; claims rely on row locks with SKIP LOCKED."""

    backend_name = "postgres"
    placeholder = "%s"
    document_lock = " FOR SHARE"

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        clock: Callable[[], datetime] = utcnow,
        ensure_schema: bool = True,
    ) -> None:
        super().__init__(clock=clock)
        self._tx_runner = tx_runner
        if ensure_schema:
            self._tx_runner.run_in_tx(fn=lambda conn: conn.execute(POSTGRES_SCHEMA))

    def _run(self, fn: Callable[[Any], Any]) -> Any:
        return self._tx_runner.run_in_tx(fn=fn)

    def _ts(self, value: datetime | None) -> Any:
        return value

    def _insert_job(self, conn: Any, job: dict[str, Any]) -> bool:
        row = self._execute(
            conn,
            """
            INSERT INTO jobs (
                job_id, document_id, owner_id, job_type, status, priority, attempts, max_attempts,
                run_after, payload, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 'queued', ?, 0, ?, ?, ?::jsonb, ?, ?)
            ON CONFLICT (document_id, job_type) WHERE status IN ('queued', 'processing') DO NOTHING
            RETURNING job_id
            """,
            (
                job["job_id"],
                job["document_id"],
                job["owner_id"],
                job["job_type"],
                job["priority"],
                job["max_attempts"],
                job["run_after"],
                job["payload"],
                job["created_at"],
                job["updated_at"],
            ),
        ).fetchone()
        return row is not None

    def claim_next(self, *, worker_id: str) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            now = self._now()
            row = self._execute(
                conn,
                f"""
                UPDATE jobs SET status = 'processing', worker_id = ?, started_at = ?, updated_at = ?
                WHERE job_id = (
                    SELECT job_id FROM jobs
                    WHERE status = 'queued' AND (run_after IS NULL OR run_after <= ?)
                    ORDER BY {_CLAIM_ORDER}
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING {_JOB_COLUMNS}
                """,
                (worker_id, now, now, now),
            ).fetchone()
            return self._job_from_row(row)

        return self._run(_op)

    def reset(self) -> None:
        self._run(lambda conn: conn.execute("TRUNCATE document_status_events, jobs, documents"))


def create_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryJobStore | SqliteJobStore | PostgresJobStore:
    env = os.environ if environ is None else environ
    backend = env.get("DOCPIPE_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("DOCPIPE_STORE_BACKEND must be postgres when DOCPIPE_REQUIRE_TRUESTACK=true")
    if backend == "memory":
        return InMemoryJobStore()
    if backend == "sqlite":
        db_path = env.get("DOCPIPE_SQLITE_PATH", ".runtime/docpipe.sqlite3")
        return SqliteJobStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when DOCPIPE_STORE_BACKEND=postgres")
        return PostgresJobStore(tx_runner=PostgresTxRunner(dsn))
    raise RuntimeError(f"unsupported store backend: {backend}")
