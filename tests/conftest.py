import os
import pathlib
import random
import sys
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ["DOCPIPE_STORE_BACKEND"] = "memory"
os.environ.pop("DOCPIPE_REQUIRE_TRUESTACK", None)

from docpipe.main import create_app
from docpipe.mock_executors import MockStageExecutor, build_mock_registry
from docpipe.pipeline import DocumentPipeline, pipeline
from docpipe.retry_policy import RetryPolicy
from docpipe.store import InMemoryJobStore
from docpipe.worker_runtime import WorkerRunStats, WorkerRuntime


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_pipeline():
    pipeline.store.reset()
    pipeline.registry = build_mock_registry()
    yield


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app())


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return {"x-internal-debug": "true"}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> MockStageExecutor:
    return MockStageExecutor()


@pytest.fixture
def local_pipeline(clock: FakeClock, executor: MockStageExecutor) -> DocumentPipeline:
    return DocumentPipeline(
        store=InMemoryJobStore(clock=clock),
        registry=build_mock_registry(executor),
        retry_policy=RetryPolicy(rng=random.Random(7)),
    )


@pytest.fixture
def register():
    def _register(pipe: DocumentPipeline, document_id: str = "doc_1", *, file_type: str = "pdf") -> dict:
        return pipe.register_document(
            document_id=document_id,
            owner_id="user_1",
            file_type=file_type,
            storage_path=f"uploads/user_1/{document_id}.{file_type}",
            filename=f"{document_id}.{file_type}",
            title="Lecture notes",
        )

    return _register


@pytest.fixture
def run_until_idle(clock: FakeClock):
    """Run one worker until no job is claimable, optionally jumping the clock over backoff delays."""

    def _run(pipe: DocumentPipeline, *, advance_seconds: float = 0, max_rounds: int = 50) -> dict[str, int]:
        runtime = WorkerRuntime(pipeline=pipe, worker_id="worker-test")
        total = WorkerRunStats()
        for _ in range(max_rounds):
            current = runtime.run_once()
            total.add(current)
            if current["processed"]:
                continue
            if advance_seconds and pipe.store.list_jobs(status="queued")["total"]:
                clock.advance(advance_seconds)
                continue
            break
        return total.as_dict()

    return _run
