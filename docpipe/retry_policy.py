from __future__ import annotations

import os
import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from docpipe.executors import INDEX_CAPABILITY
from docpipe.runtime_profile import env_float, env_int
from docpipe.states import JOB_TYPES


@dataclass(frozen=True)
class RetryDecision:
    terminal: bool
    attempts: int
    retry_at: datetime | None = None
    delay_seconds: float = 0.0


@dataclass
class RetryPolicy:
    """Decides whether a failed job is re-queued and how long it waits.

    ``attempts`` is the number of failed executions before the current one.
    Delay grows as ``base * 2**n`` (capped) plus up to ``base`` seconds of
    uniform jitter so retries from many documents do not line up.
    """

    base_seconds: float = 30.0
    max_seconds: float = 1800.0
    max_attempts: int = 3
    max_attempts_by_type: dict[str, int] = field(default_factory=dict)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def max_attempts_for(self, job_type: str) -> int:
        return max(1, int(self.max_attempts_by_type.get(job_type, self.max_attempts)))

    def backoff_seconds(self, attempts: int) -> float:
        n = max(1, int(attempts))
        exponential = self.base_seconds * (2**n)
        delay = min(self.max_seconds, exponential) + self.rng.uniform(0, self.base_seconds)
        return min(self.max_seconds, delay)

    def decide(
        self,
        *,
        attempts: int,
        max_attempts: int,
        retryable: bool,
        now: datetime,
    ) -> RetryDecision:
        failed_attempts = int(attempts) + 1
        if not retryable or failed_attempts >= int(max_attempts):
            return RetryDecision(terminal=True, attempts=failed_attempts)
        delay = self.backoff_seconds(failed_attempts)
        return RetryDecision(
            terminal=False,
            attempts=failed_attempts,
            retry_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RetryPolicy:
        env = os.environ if environ is None else environ
        max_attempts = env_int(env, "DOCPIPE_MAX_ATTEMPTS", default=3, minimum=1)
        overrides: dict[str, int] = {}
        for job_type in (*JOB_TYPES, INDEX_CAPABILITY):
            name = f"DOCPIPE_MAX_ATTEMPTS_{job_type.upper()}"
            if str(env.get(name, "")).strip():
                overrides[job_type] = env_int(env, name, default=max_attempts, minimum=1)
        return cls(
            base_seconds=env_float(env, "DOCPIPE_RETRY_BASE_SECONDS", default=30.0),
            max_seconds=env_float(env, "DOCPIPE_RETRY_MAX_SECONDS", default=1800.0),
            max_attempts=max_attempts,
            max_attempts_by_type=overrides,
        )
