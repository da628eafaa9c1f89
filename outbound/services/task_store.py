"""
Task record store.

All state transitions are single conditional UPDATE statements against the
`tasks` table. The claim (PENDING/FAILED -> SENDING) is the only mutual
exclusion in the pipeline; completion writes must present the claim token
that won it.
"""
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from outbound.logging_config import get_logger
from outbound.models import (
    ACTIVE_STATUSES,
    CLAIMABLE_STATUSES,
    RETRYABLE_STATUSES,
    Task,
    TaskKind,
    TaskStatus,
    db,
)
from outbound.datetime_utils import utcnow

logger = get_logger(__name__)


class TaskNotFound(Exception):
    """Raised when a task id does not exist."""


class TaskNotRetryable(Exception):
    """Raised when a task is in a status the requested operation cannot act on."""

    def __init__(self, task_id, status):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is {status.value}")


def _due_clause(now):
    return or_(Task.scheduled_at.is_(None), Task.scheduled_at <= now)


class TaskStore:
    """Persistence operations for outbound tasks."""

    @staticmethod
    def enqueue(
        kind: TaskKind,
        payload: dict,
        scheduled_at: Optional[datetime] = None,
        dedupe_key: Optional[str] = None,
        subject_key: Optional[str] = None,
    ) -> Optional[Task]:
        """
        Insert a PENDING task.

        When `dedupe_key` is given and a task with that key already exists, nothing
        is inserted and None is returned. The insert runs inside a SAVEPOINT so a
        concurrent duplicate only rolls back this row, not the caller's transaction.
        """
        if dedupe_key and TaskStore.exists(dedupe_key):
            return None

        now = utcnow()
        task = Task(
            kind=kind,
            payload=payload or {},
            status=TaskStatus.PENDING,
            scheduled_at=scheduled_at,
            retry_count=0,
            dedupe_key=dedupe_key,
            subject_key=subject_key,
            created_at=now,
            updated_at=now,
        )
        try:
            with db.session.begin_nested():
                db.session.add(task)
        except IntegrityError:
            logger.info("Task already scheduled", dedupe_key=dedupe_key, kind=kind.value)
            return None

        logger.debug("Task enqueued", task_id=task.id, kind=kind.value, scheduled_at=str(scheduled_at))
        return task

    @staticmethod
    def exists(dedupe_key: str) -> bool:
        return db.session.execute(
            select(Task.id).where(Task.dedupe_key == dedupe_key).limit(1)
        ).first() is not None

    @staticmethod
    def has_active(subject_key: str, kind: Optional[TaskKind] = None) -> bool:
        """True if a non-terminal task exists for this subject."""
        stmt = select(Task.id).where(
            Task.subject_key == subject_key,
            Task.status.in_(ACTIVE_STATUSES),
        )
        if kind is not None:
            stmt = stmt.where(Task.kind == kind)
        return db.session.execute(stmt.limit(1)).first() is not None

    @staticmethod
    def get(task_id: int) -> Task:
        task = db.session.get(Task, task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    @staticmethod
    def select_due_ids(limit: int, now: datetime, kinds: Optional[Iterable[TaskKind]] = None) -> List[int]:
        """
        Ids of claimable tasks, oldest-due first.

        A NULL scheduled_at is treated as due since creation.
        """
        stmt = (
            select(Task.id)
            .where(Task.status.in_(CLAIMABLE_STATUSES), _due_clause(now))
            .order_by(func.coalesce(Task.scheduled_at, Task.created_at).asc(), Task.id.asc())
            .limit(limit)
        )
        if kinds is not None:
            stmt = stmt.where(Task.kind.in_(list(kinds)))
        return list(db.session.execute(stmt).scalars())

    @staticmethod
    def claim(task_id: int, now: datetime, manual: bool = False) -> Optional[str]:
        """
        Atomically move a task to SENDING.

        Batch claims require a claimable status and a due scheduled_at. Manual
        claims also accept DEAD tasks, ignore scheduled_at, and pull a future
        scheduled_at back to `now`.

        Returns:
            str: the claim token, or None if another worker got there first
        """
        token = uuid.uuid4().hex
        values = {
            "status": TaskStatus.SENDING,
            "claim_token": token,
            "updated_at": now,
        }
        stmt = update(Task).where(Task.id == task_id)
        if manual:
            stmt = stmt.where(Task.status.in_(RETRYABLE_STATUSES))
            values["scheduled_at"] = case(
                (Task.scheduled_at > now, now),
                else_=Task.scheduled_at,
            )
        else:
            stmt = stmt.where(Task.status.in_(CLAIMABLE_STATUSES), _due_clause(now))

        result = db.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        db.session.commit()

        if result.rowcount != 1:
            return None
        return token

    @staticmethod
    def mark_sent(task_id: int, token: str, now: datetime, result: Optional[dict] = None) -> bool:
        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.claim_token == token, Task.status == TaskStatus.SENDING)
            .values(
                status=TaskStatus.SENT,
                sent_at=now,
                updated_at=now,
                error_message=None,
                claim_token=None,
                result=result,
            )
            .execution_options(synchronize_session=False)
        )
        updated = db.session.execute(stmt).rowcount == 1
        db.session.commit()
        return updated

    @staticmethod
    def mark_failed(
        task_id: int,
        token: str,
        now: datetime,
        retry_count: int,
        error_message: str,
        status: TaskStatus,
        scheduled_at: Optional[datetime],
    ) -> bool:
        """Record a failed attempt. `status` is FAILED or DEAD as decided by the retry policy."""
        values = {
            "status": status,
            "retry_count": retry_count,
            "error_message": (error_message or "")[:2000],
            "updated_at": now,
            "claim_token": None,
        }
        if status == TaskStatus.FAILED:
            values["scheduled_at"] = scheduled_at
        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.claim_token == token, Task.status == TaskStatus.SENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        updated = db.session.execute(stmt).rowcount == 1
        db.session.commit()
        return updated

    @staticmethod
    def reclaim_stale(cutoff: datetime, now: datetime) -> int:
        """Return SENDING tasks last touched before `cutoff` to PENDING. Not counted as an attempt."""
        stmt = (
            update(Task)
            .where(Task.status == TaskStatus.SENDING, Task.updated_at < cutoff)
            .values(status=TaskStatus.PENDING, claim_token=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        count = db.session.execute(stmt).rowcount
        db.session.commit()
        return count

    @staticmethod
    def cancel(task_id: int, now: Optional[datetime] = None) -> Task:
        now = now or utcnow()
        task = TaskStore.get(task_id)
        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.status.in_(RETRYABLE_STATUSES))
            .values(status=TaskStatus.CANCELLED, claim_token=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        updated = db.session.execute(stmt).rowcount == 1
        db.session.commit()
        db.session.refresh(task)
        if not updated:
            raise TaskNotRetryable(task_id, task.status)
        return task

    @staticmethod
    def counts_by_status(kind: Optional[TaskKind] = None) -> Dict[str, int]:
        stmt = select(Task.status, func.count(Task.id)).group_by(Task.status)
        if kind is not None:
            stmt = stmt.where(Task.kind == kind)
        counts = {status.value: 0 for status in TaskStatus}
        for status, count in db.session.execute(stmt):
            counts[status.value] = count
        return counts

    @staticmethod
    def count_due(now: datetime, kind: Optional[TaskKind] = None) -> int:
        stmt = select(func.count(Task.id)).where(Task.status.in_(CLAIMABLE_STATUSES), _due_clause(now))
        if kind is not None:
            stmt = stmt.where(Task.kind == kind)
        return db.session.execute(stmt).scalar_one()

    @staticmethod
    def list_tasks(
        status: Optional[TaskStatus] = None,
        kind: Optional[TaskKind] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Task], int]:
        stmt = select(Task)
        count_stmt = select(func.count(Task.id))
        if status is not None:
            stmt = stmt.where(Task.status == status)
            count_stmt = count_stmt.where(Task.status == status)
        if kind is not None:
            stmt = stmt.where(Task.kind == kind)
            count_stmt = count_stmt.where(Task.kind == kind)

        total = db.session.execute(count_stmt).scalar_one()
        stmt = stmt.order_by(Task.id.desc()).offset((page - 1) * limit).limit(limit)
        return list(db.session.execute(stmt).scalars()), total
