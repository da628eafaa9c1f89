"""
Dispatcher: claims due tasks and drives each one through its sender.

A batch selects due ids, claims them one by one with the store's atomic
conditional update, then executes the claimed tasks. A lost claim is a skip,
not a failure. One task's exception never aborts the batch.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from flask import current_app

from outbound.datetime_utils import utcnow
from outbound.logging_config import BatchContext, get_logger
from outbound.models import Task, TaskKind, TaskStatus, db
from outbound.senders import PermanentSendError, Sender
from outbound.services.retry_policy import RetryPolicy
from outbound.services.task_store import TaskNotRetryable, TaskStore

logger = get_logger(__name__)


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    claimed: int = 0

    def add(self, other: "BatchResult"):
        self.processed += other.processed
        self.failed += other.failed
        self.skipped += other.skipped
        self.dead_lettered += other.dead_lettered
        self.claimed += other.claimed

    def to_dict(self):
        return asdict(self)


@dataclass
class TaskOutcome:
    task_id: int
    status: Optional[TaskStatus]  # None when the lease was lost mid-flight
    retry_count: int = 0
    error: Optional[str] = None
    result: Optional[dict] = None

    def to_dict(self):
        return {
            "task_id": self.task_id,
            "status": self.status.value if self.status else None,
            "retry_count": self.retry_count,
            "error": self.error,
            "result": self.result,
        }


class Dispatcher:
    """Executes claimed tasks through the sender registered for their kind."""

    def __init__(
        self,
        senders: Dict[TaskKind, Sender],
        retry_policy: RetryPolicy,
        batch_limit: int = 10,
        max_batch_limit: int = 50,
        max_workers: int = 1,
        stale_after_seconds: int = 900,
    ):
        self.senders = dict(senders)
        self.retry_policy = retry_policy
        self.batch_limit = batch_limit
        self.max_batch_limit = max_batch_limit
        self.max_workers = max(1, max_workers)
        self.stale_after_seconds = stale_after_seconds
        self.success_hooks: Dict[TaskKind, Callable] = {}

    def register(self, kind: TaskKind, sender: Sender):
        self.senders[kind] = sender

    def on_success(self, kind: TaskKind, hook: Callable):
        """`hook(task_id, payload, now)` runs after a task of `kind` is marked SENT."""
        self.success_hooks[kind] = hook

    def normalize_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.batch_limit
        limit = int(limit)
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        return min(limit, self.max_batch_limit)

    def run_batch(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> BatchResult:
        """
        Claim and execute up to `limit` due tasks.

        Args:
            limit: batch size; defaults to the configured batch limit and is
                clamped to the configured maximum
            now: evaluation time; defaults to the current UTC time

        Returns:
            BatchResult: processed (SENT), failed (FAILED or DEAD), dead_lettered,
            skipped (lost claims or lost leases) and claimed counts
        """
        limit = self.normalize_limit(limit)
        clock = (lambda: now) if now is not None else utcnow
        batch_now = clock()
        result = BatchResult()

        with BatchContext("dispatch", limit=limit) as ctx:
            ids = TaskStore.select_due_ids(limit, batch_now, kinds=self.senders.keys())
            claimed = []
            for task_id in ids:
                token = TaskStore.claim(task_id, batch_now)
                if token is None:
                    ctx.logger.debug("Task claimed elsewhere, skipping", task_id=task_id)
                    result.skipped += 1
                    continue
                claimed.append((task_id, token))
            result.claimed = len(claimed)

            for outcome in self._execute_all(claimed, clock):
                if outcome.status == TaskStatus.SENT:
                    result.processed += 1
                elif outcome.status == TaskStatus.FAILED:
                    result.failed += 1
                elif outcome.status == TaskStatus.DEAD:
                    result.failed += 1
                    result.dead_lettered += 1
                else:
                    result.skipped += 1

            ctx.logger.info("Dispatch batch finished", selected=len(ids), **result.to_dict())
        return result

    def drain(self, limit: Optional[int] = None, rounds: int = 1, now: Optional[datetime] = None) -> BatchResult:
        """Run batches until nothing is claimed or `rounds` is reached."""
        total = BatchResult()
        for _ in range(max(1, rounds)):
            batch = self.run_batch(limit=limit, now=now)
            total.add(batch)
            if batch.claimed == 0:
                break
        return total

    def execute_now(self, task_id: int, now: Optional[datetime] = None) -> TaskOutcome:
        """
        Execute one task immediately, bypassing selection and eligibility.

        Accepts PENDING, FAILED and DEAD tasks. Uses the same claim guard and
        transitions as a batch.

        Raises:
            TaskNotFound: no such task
            TaskNotRetryable: the task is SENDING, SENT or CANCELLED
        """
        clock = (lambda: now) if now is not None else utcnow
        task = TaskStore.get(task_id)
        if task.kind not in self.senders:
            raise TaskNotRetryable(task_id, task.status)

        token = TaskStore.claim(task_id, clock(), manual=True)
        if token is None:
            db.session.refresh(task)
            raise TaskNotRetryable(task_id, task.status)

        logger.info("Executing task on demand", task_id=task_id, kind=task.kind.value)
        return self._execute(task_id, token, clock)

    def reclaim_stale(self, timeout: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Return SENDING tasks untouched for `timeout` seconds to PENDING."""
        now = now or utcnow()
        timeout = self.stale_after_seconds if timeout is None else timeout
        cutoff = now - timedelta(seconds=timeout)
        count = TaskStore.reclaim_stale(cutoff, now)
        if count:
            logger.warning("Reclaimed stale tasks", count=count, timeout_seconds=timeout)
        return count

    def _execute_all(self, claimed, clock) -> List[TaskOutcome]:
        if not claimed:
            return []
        if self.max_workers == 1 or len(claimed) == 1:
            return [self._execute(task_id, token, clock) for task_id, token in claimed]

        app = current_app._get_current_object()
        workers = min(self.max_workers, len(claimed))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as executor:
            futures = [
                executor.submit(self._execute_in_context, app, task_id, token, clock)
                for task_id, token in claimed
            ]
            return [future.result() for future in futures]

    def _execute_in_context(self, app, task_id, token, clock) -> TaskOutcome:
        with app.app_context():
            return self._execute(task_id, token, clock)

    def _execute(self, task_id: int, token: str, clock) -> TaskOutcome:
        task = db.session.get(Task, task_id, populate_existing=True)
        kind, payload, retry_count = task.kind, dict(task.payload or {}), task.retry_count

        sender = self.senders.get(kind)
        if sender is None:
            return self._fail(task_id, token, kind, retry_count, f"No sender registered for {kind.value}", clock(), True)

        try:
            result = sender.send(kind, payload)
        except PermanentSendError as e:
            db.session.rollback()
            return self._fail(task_id, token, kind, retry_count, str(e), clock(), True)
        except Exception as e:
            db.session.rollback()
            logger.warning(
                "Sender raised",
                task_id=task_id,
                kind=kind.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            return self._fail(task_id, token, kind, retry_count, f"{type(e).__name__}: {e}", clock(), False)

        now = clock()
        if not TaskStore.mark_sent(task_id, token, now, result=result):
            logger.warning("Lease lost before completion, result discarded", task_id=task_id, kind=kind.value)
            return TaskOutcome(task_id=task_id, status=None, retry_count=retry_count)

        logger.info("Task sent", task_id=task_id, kind=kind.value, retry_count=retry_count)
        self._run_success_hook(kind, task_id, payload, now)
        return TaskOutcome(task_id=task_id, status=TaskStatus.SENT, retry_count=retry_count, result=result)

    def _fail(self, task_id, token, kind, retry_count, error, now, permanent) -> TaskOutcome:
        retry_count += 1
        decision = self.retry_policy.decide(kind, retry_count, now, permanent=permanent)
        recorded = TaskStore.mark_failed(
            task_id,
            token,
            now,
            retry_count=retry_count,
            error_message=error,
            status=decision.status,
            scheduled_at=decision.scheduled_at,
        )
        if not recorded:
            logger.warning("Lease lost before failure was recorded", task_id=task_id, kind=kind.value)
            return TaskOutcome(task_id=task_id, status=None, retry_count=retry_count - 1, error=error)

        if decision.status == TaskStatus.DEAD:
            logger.error(
                "Task dead-lettered",
                task_id=task_id,
                kind=kind.value,
                retry_count=retry_count,
                permanent=permanent,
                error=error,
            )
        else:
            logger.info(
                "Task failed, will retry",
                task_id=task_id,
                kind=kind.value,
                retry_count=retry_count,
                next_attempt_at=str(decision.scheduled_at),
            )
        return TaskOutcome(task_id=task_id, status=decision.status, retry_count=retry_count, error=error)

    def _run_success_hook(self, kind, task_id, payload, now):
        hook = self.success_hooks.get(kind)
        if hook is None:
            return
        try:
            hook(task_id, payload, now)
            db.session.commit()
        except Exception as e:
            # SENT is terminal; a hook failure is reported but does not reopen the task
            db.session.rollback()
            logger.error("Success hook failed", task_id=task_id, kind=kind.value, error=str(e), exc_info=True)
