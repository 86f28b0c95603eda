"""Transactional outbox: enqueue inside the caller's transaction, claim/complete/retry from the dispatcher.

`enqueue_task` never commits. The row becomes visible to dispatchers only when
the business transaction that called it commits, and disappears with it on
rollback.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite

from fitflow.common.db import as_utc, utcnow
from fitflow.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total, tasks_enqueued_total
from fitflow.common.models import Task, TaskFailure
from fitflow.common.tasks import TaskKind, TaskPayload, parse_task_payload


# Dialects whose INSERT supports ON CONFLICT DO NOTHING.
DEDUPE_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass(frozen=True)
class ClaimedTask:
    id: str
    kind: str
    payload: dict
    attempts: int
    available_at: datetime


def enqueue_task(
    db,
    kind: TaskKind | str,
    payload: TaskPayload | dict[str, Any],
    available_at: datetime | None = None,
    dedupe_key: str | None = None,
) -> str | None:
    """Add one task row to the caller's session and return its id.

    Returns None without inserting when `dedupe_key` is already taken, including
    by a concurrent transaction that has not committed yet: the insert then waits
    for that transaction and does nothing if it commits.
    """

    kind = TaskKind(kind)
    values = dict(
        id=str(uuid4()),
        kind=kind.value,
        payload=parse_task_payload(kind, payload).to_json(),
        status="PENDING",
        available_at=available_at or utcnow(),
        attempts=0,
        dedupe_key=dedupe_key,
    )
    if dedupe_key is None:
        db.add(Task(**values))
    else:
        dialect = db.get_bind().dialect.name
        if dialect not in DEDUPE_INSERTS:
            raise RuntimeError(f"deduplicated enqueue is not supported on {dialect}")
        inserted = db.execute(
            DEDUPE_INSERTS[dialect](Task)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["dedupe_key"])
            .returning(Task.id)
        ).scalar_one_or_none()
        if inserted is None:
            return None
    tasks_enqueued_total.labels(kind=kind.value).inc()
    return values["id"]


def claim_tasks(db, worker_id: str, limit: int = 1, processing_timeout_seconds: int = 300) -> list[ClaimedTask]:
    """Atomically claim ready rows, plus rows whose previous claim went stale."""

    table = Task.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                (table.c.status == "PENDING") & (table.c.available_at <= now),
                (table.c.status == "PROCESSING")
                & (table.c.claimed_at.is_not(None))
                & (table.c.claimed_at < stale_before),
            )
        )
        .order_by(table.c.available_at, table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", claimed_at=now, claimed_by=worker_id, attempts=table.c.attempts + 1)
        .returning(table.c.id, table.c.kind, table.c.payload, table.c.attempts, table.c.available_at)
    ).all()
    return [
        ClaimedTask(
            id=row.id,
            kind=row.kind,
            payload=row.payload,
            attempts=row.attempts,
            available_at=as_utc(row.available_at),
        )
        for row in rows
    ]


def complete_task(db, task_id: str) -> None:
    """Remove a claimed task after its handler succeeded."""

    db.execute(delete(Task).where(Task.id == task_id, Task.status == "PROCESSING"))


def reschedule_task(db, task_id: str, available_at: datetime, error: str) -> None:
    """Return a claimed task to `PENDING`, not dispatchable before `available_at`."""

    db.execute(
        update(Task)
        .where(Task.id == task_id, Task.status == "PROCESSING")
        .values(status="PENDING", available_at=available_at, claimed_at=None, claimed_by=None, last_error=error)
    )


def discard_task(db, task: ClaimedTask, error: str) -> None:
    """Remove a claimed task for good and record the failure."""

    db.execute(delete(Task).where(Task.id == task.id))
    db.add(
        TaskFailure(
            task_id=task.id,
            kind=task.kind,
            payload=task.payload,
            error=error,
            attempts=task.attempts,
        )
    )


def normalize_error_message(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def update_outbox_backlog_metrics(db, service_name: str) -> None:
    """Update gauges for outbox depth and the age of the oldest available task."""

    now = utcnow()
    pending_count = db.execute(select(func.count()).select_from(Task)).scalar_one()
    oldest_available = db.execute(
        select(func.min(Task.available_at)).where(Task.status == "PENDING", Task.available_at <= now)
    ).scalar_one()
    age_seconds = 0.0
    if oldest_available is not None:
        age_seconds = max(0.0, (now - as_utc(oldest_available)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
