"""
Retry policy for outbound tasks.

Decides, after a failed attempt, whether a task goes back into the queue
(FAILED, with a backoff) or is dead-lettered (DEAD).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

from outbound.models import TaskKind, TaskStatus

DEFAULT_MAX_ATTEMPTS = 5
# 5 min, 15 min, 30 min, 1 hour, 2 hours
DEFAULT_DELAYS_SECONDS = (300, 900, 1800, 3600, 7200)


@dataclass
class RetryDecision:
    status: TaskStatus
    scheduled_at: Optional[datetime]


class RetryPolicy:
    """Attempt ceiling per kind plus a backoff ladder."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        per_kind_max_attempts: Optional[Dict[TaskKind, int]] = None,
        delays: Sequence[int] = DEFAULT_DELAYS_SECONDS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.default_max_attempts = max_attempts
        self.per_kind_max_attempts = dict(per_kind_max_attempts or {})
        self.delays = tuple(delays)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        per_kind = {}
        for kind in TaskKind:
            value = config.get(f"TASK_MAX_ATTEMPTS_{kind.name}")
            if value:
                per_kind[kind] = int(value)
        return cls(
            max_attempts=int(config.get("TASK_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)),
            per_kind_max_attempts=per_kind,
            delays=config.get("RETRY_DELAYS_SECONDS", DEFAULT_DELAYS_SECONDS),
        )

    def max_attempts(self, kind: TaskKind) -> int:
        return self.per_kind_max_attempts.get(kind, self.default_max_attempts)

    def should_retry(self, kind: TaskKind, retry_count: int) -> bool:
        """True while the task has attempts left. `retry_count` counts failures so far."""
        return retry_count < self.max_attempts(kind)

    def next_attempt_at(self, retry_count: int, now: datetime) -> Optional[datetime]:
        """
        Earliest time the next attempt may run.

        The ladder is indexed by failures so far; the last step repeats.
        An empty ladder returns None, meaning eligible immediately.
        """
        if not self.delays:
            return None
        index = min(max(retry_count, 1), len(self.delays)) - 1
        return now + timedelta(seconds=self.delays[index])

    def decide(self, kind: TaskKind, retry_count: int, now: datetime, permanent: bool = False) -> RetryDecision:
        """
        Args:
            kind: task kind
            retry_count: failure count including the attempt that just failed
            now: current time
            permanent: the sender reported a non-retryable failure
        """
        if permanent or not self.should_retry(kind, retry_count):
            return RetryDecision(status=TaskStatus.DEAD, scheduled_at=None)
        return RetryDecision(status=TaskStatus.FAILED, scheduled_at=self.next_attempt_at(retry_count, now))
