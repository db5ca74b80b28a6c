"""Redis-backed bookkeeping of rerun attempts and failure signals per pull request.

The stop decision engine is a pure function of the counters it is handed; this ledger is
where callers (and the HTTP layer, when a caller omits them) obtain those counters.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from redis import Redis

MAX_SIGNAL_HISTORY = 50


@dataclass(frozen=True)
class SignalHistory:
    signals: list[str]
    first_failure_at: Optional[datetime]
    last_changed_at: Optional[datetime]


def _parse(value: str | None) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class AttemptLedger:
    """Counts reruns per job and per PR and keeps the failure signal history."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    def record_rerun_attempt(self, repository: str, pr_number: int, run_id: int | None, job_name: str) -> int:
        key = self._attempts_key(repository, pr_number)
        pipeline = self._client.pipeline()
        pipeline.hincrby(key, self._job_field(run_id, job_name), 1)
        pipeline.incr(f"{key}:total")
        job_count, _ = pipeline.execute()
        return int(job_count)

    def job_attempts(self, repository: str, pr_number: int, run_id: int | None, job_name: str) -> int:
        value = self._client.hget(self._attempts_key(repository, pr_number), self._job_field(run_id, job_name))
        return int(value or 0)

    def max_job_attempts(self, repository: str, pr_number: int) -> int:
        values = self._client.hvals(self._attempts_key(repository, pr_number))
        return max((int(value) for value in values), default=0)

    def total_pr_attempts(self, repository: str, pr_number: int) -> int:
        value = self._client.get(f"{self._attempts_key(repository, pr_number)}:total")
        return int(value or 0)

    def record_failure_signal(
        self,
        repository: str,
        pr_number: int,
        signal: str,
        observed_at: datetime | None = None,
    ) -> SignalHistory:
        """Append an observed signal; repeated observations of one attempt are collapsed."""

        observed_at = observed_at or datetime.now(timezone.utc)
        key = self._signals_key(repository, pr_number)
        attempts_marker = str(self.total_pr_attempts(repository, pr_number))
        last_marker = self._client.get(f"{key}:attempt_marker")
        last = self._client.lindex(key, -1)
        if last == signal and last_marker == attempts_marker:
            return self.history(repository, pr_number)

        pipeline = self._client.pipeline()
        pipeline.rpush(key, signal)
        pipeline.ltrim(key, -MAX_SIGNAL_HISTORY, -1)
        pipeline.set(f"{key}:attempt_marker", attempts_marker)
        pipeline.setnx(f"{key}:first_failure_at", observed_at.isoformat())
        if last != signal:
            pipeline.set(f"{key}:last_changed_at", observed_at.isoformat())
        pipeline.execute()
        return self.history(repository, pr_number)

    def clear_failure_signals(self, repository: str, pr_number: int) -> None:
        key = self._signals_key(repository, pr_number)
        self._client.delete(key, f"{key}:attempt_marker", f"{key}:first_failure_at", f"{key}:last_changed_at")

    def history(self, repository: str, pr_number: int) -> SignalHistory:
        key = self._signals_key(repository, pr_number)
        return SignalHistory(
            signals=list(self._client.lrange(key, 0, -1)),
            first_failure_at=_parse(self._client.get(f"{key}:first_failure_at")),
            last_changed_at=_parse(self._client.get(f"{key}:last_changed_at")),
        )

    @staticmethod
    def _attempts_key(repository: str, pr_number: int) -> str:
        return f"attempts:{repository.lower()}#{pr_number}"

    @staticmethod
    def _signals_key(repository: str, pr_number: int) -> str:
        return f"signals:{repository.lower()}#{pr_number}"

    @staticmethod
    def _job_field(run_id: int | None, job_name: str) -> str:
        return f"{run_id or 0}:{job_name}"
