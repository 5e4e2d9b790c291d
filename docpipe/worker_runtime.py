from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from docpipe.executors import StageError, StageOutcome, run_executor
from docpipe.payloads import load_payload
from docpipe.runtime_profile import env_int

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    discarded: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "discarded": self.discarded,
        }

    def add(self, other: dict[str, int]) -> None:
        self.processed += int(other["processed"])
        self.succeeded += int(other["succeeded"])
        self.retrying += int(other["retrying"])
        self.failed += int(other["failed"])
        self.discarded += int(other["discarded"])


@dataclass(frozen=True)
class WorkerSettings:
    concurrency: int = 2
    poll_interval_ms: int = 500
    stale_after_seconds: int = 1800
    max_jobs_per_iteration: int = 20
    worker_id_prefix: str = "worker"

    def as_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "poll_interval_ms": self.poll_interval_ms,
            "stale_after_seconds": self.stale_after_seconds,
            "max_jobs_per_iteration": self.max_jobs_per_iteration,
            "worker_id_prefix": self.worker_id_prefix,
        }

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WorkerSettings:
        env = os.environ if environ is None else environ
        prefix = str(env.get("WORKER_ID_PREFIX", "")).strip() or f"worker-{socket.gethostname()}-{os.getpid()}"
        return cls(
            concurrency=env_int(env, "WORKER_CONCURRENCY", default=2, minimum=1),
            poll_interval_ms=env_int(env, "WORKER_POLL_INTERVAL_MS", default=500, minimum=1),
            stale_after_seconds=env_int(env, "WORKER_STALE_AFTER_SECONDS", default=1800, minimum=1),
            max_jobs_per_iteration=env_int(env, "WORKER_MAX_JOBS_PER_ITERATION", default=20, minimum=1),
            worker_id_prefix=prefix,
        )


class WorkerRuntime:
    """Claims jobs from the store, runs the matching executor and reports back."""

    def __init__(
        self,
        *,
        pipeline: Any,
        worker_id: str,
        max_jobs_per_iteration: int = 20,
        poll_interval_ms: int = 500,
    ) -> None:
        self.pipeline = pipeline
        self.worker_id = worker_id
        self.max_jobs_per_iteration = max(1, int(max_jobs_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def _execute(self, job: dict[str, Any]) -> StageOutcome:
        executor = self.pipeline.registry.get(job["job_type"])
        if executor is None:
            return StageOutcome.fatal(f"no executor registered for job type {job['job_type']}")
        try:
            payload = load_payload(job["payload"])
        except ValidationError as exc:
            return StageOutcome.fatal(f"invalid payload: {exc.error_count()} validation errors")
        return run_executor(executor, job["job_type"], payload, label=f"job_id={job['job_id']}")

    def process_job(self, job: dict[str, Any], stats: WorkerRunStats) -> None:
        stats.processed += 1
        logger.info(
            "job_claimed job_id=%s job_type=%s document_id=%s worker_id=%s",
            job["job_id"],
            job["job_type"],
            job["document_id"],
            self.worker_id,
        )
        outcome = self._execute(job)
        try:
            self._report(job, outcome, stats)
        except Exception:
            # Keep worker loop alive on unexpected reporting failures; stale release requeues the job.
            logger.exception("job_report_failed job_id=%s worker_id=%s", job["job_id"], self.worker_id)
            stats.failed += 1

    def _report(self, job: dict[str, Any], outcome: StageOutcome, stats: WorkerRunStats) -> None:
        if outcome.success:
            if self.pipeline.complete(job=job, outcome=outcome) is None:
                stats.discarded += 1
            else:
                stats.succeeded += 1
            return
        error = outcome.error or StageError(retryable=True, message="stage failed without error detail")
        updated = self.pipeline.fail(job=job, error=error)
        if updated is None:
            stats.discarded += 1
        elif updated["status"] == "queued":
            stats.retrying += 1
        else:
            stats.failed += 1

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_jobs_per_iteration:
            try:
                job = self.pipeline.store.claim_next(worker_id=self.worker_id)
            except Exception:
                # Store unavailable (locked database, dropped connection); back off until the next poll.
                logger.exception("job_claim_failed worker_id=%s", self.worker_id)
                break
            if job is None:
                break
            self.process_job(job, stats)
        return stats.as_dict()

    def run_forever(
        self,
        *,
        stop_after_iterations: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while stop_event is None or not stop_event.is_set():
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                if stop_event is not None:
                    stop_event.wait(self.poll_interval_ms / 1000.0)
                else:
                    time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


class WorkerPool:
    """N worker runtimes on threads sharing one stop event."""

    def __init__(self, *, pipeline: Any, settings: WorkerSettings) -> None:
        self.pipeline = pipeline
        self.settings = settings
        self.stop_event = threading.Event()
        self.runtimes = [
            WorkerRuntime(
                pipeline=pipeline,
                worker_id=f"{settings.worker_id_prefix}-{idx}",
                max_jobs_per_iteration=settings.max_jobs_per_iteration,
                poll_interval_ms=settings.poll_interval_ms,
            )
            for idx in range(settings.concurrency)
        ]
        self._threads: list[threading.Thread] = []
        self._stats: dict[str, dict[str, int]] = {}
        self._lock = threading.Lock()

    def _run(self, runtime: WorkerRuntime) -> None:
        result = runtime.run_forever(stop_event=self.stop_event)
        with self._lock:
            self._stats[runtime.worker_id] = result

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("worker pool already started")
        released = self.pipeline.release_stale_jobs(stale_after_seconds=self.settings.stale_after_seconds)
        if released:
            logger.warning("worker_pool_released_stale count=%s", len(released))
        self.stop_event.clear()
        for runtime in self.runtimes:
            thread = threading.Thread(target=self._run, args=(runtime,), name=runtime.worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("worker_pool_started concurrency=%s", len(self.runtimes))

    def stop(self, *, timeout: float | None = None) -> dict[str, int]:
        """Signal every worker to finish its current iteration and wait for them."""
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        aggregate = WorkerRunStats()
        with self._lock:
            for result in self._stats.values():
                aggregate.add(result)
        logger.info("worker_pool_stopped processed=%s", aggregate.processed)
        return aggregate.as_dict()


def create_worker_runtime_from_env(
    *,
    pipeline: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    settings = WorkerSettings.from_env(environ)
    return WorkerRuntime(
        pipeline=pipeline,
        worker_id=f"{settings.worker_id_prefix}-0",
        max_jobs_per_iteration=settings.max_jobs_per_iteration,
        poll_interval_ms=settings.poll_interval_ms,
    )


def create_worker_pool_from_env(
    *,
    pipeline: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerPool:
    return WorkerPool(pipeline=pipeline, settings=WorkerSettings.from_env(environ))
