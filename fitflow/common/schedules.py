"""Recurring task schedules.

A recurring task carries the time it was scheduled for. Its next occurrence is
computed from that time, never from when the handler finished, so handler
latency and failures do not shift the schedule.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from fitflow.common.logging import logger
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import RECURRING_TASK_KINDS, ScheduledTaskPayload, TaskKind


def next_utc_daily_time(start: datetime, times: list[tuple[int, int]]) -> datetime:
    """First `(hour, minute)` UTC slot strictly after `start`."""

    start = start.astimezone(timezone.utc)
    day = start.replace(hour=0, minute=0, second=0, microsecond=0)
    ordered = sorted(times)
    for hour, minute in ordered:
        candidate = day.replace(hour=hour, minute=minute)
        if candidate > start:
            return candidate
    hour, minute = ordered[0]
    return (day + timedelta(days=1)).replace(hour=hour, minute=minute)


def next_utc_hourly_minute(start: datetime, minutes: list[int]) -> datetime:
    """First listed minute-past-the-hour strictly after `start`."""

    start = start.astimezone(timezone.utc)
    hour = start.replace(minute=0, second=0, microsecond=0)
    ordered = sorted(minutes)
    for minute in ordered:
        candidate = hour.replace(minute=minute)
        if candidate > start:
            return candidate
    return (hour + timedelta(hours=1)).replace(minute=ordered[0])


RECURRING_SCHEDULES: dict[TaskKind, Callable[[datetime], datetime]] = {
    TaskKind.CHARGE_PAYMENT_PLANS: lambda start: next_utc_daily_time(start, [(0, 0)]),
    TaskKind.SEND_PAYMENT_REMINDERS: lambda start: next_utc_hourly_minute(start, [0, 30]),
    TaskKind.REFRESH_APP_STORE_RECEIPTS: lambda start: next_utc_daily_time(start, [(0, 30), (12, 30)]),
    TaskKind.TAG_TRIALLED_DIDNT_SUB: lambda start: next_utc_hourly_minute(start, [2, 32]),
}


def parse_scheduled_at(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def scheduled_dedupe_key(kind: TaskKind, scheduled_at: datetime) -> str:
    return f"{kind.value}:{scheduled_at.astimezone(timezone.utc).isoformat()}"


def schedule_next_recurring_task(db, kind: TaskKind, base: datetime) -> datetime:
    """Enqueue the occurrence after `base` in the caller's transaction."""

    next_at = RECURRING_SCHEDULES[kind](base)
    enqueue_task(
        db,
        kind,
        ScheduledTaskPayload(scheduled_at=next_at),
        available_at=next_at,
        dedupe_key=scheduled_dedupe_key(kind, next_at),
    )
    return next_at


def schedule_next_recurring_task_safe(session_factory, kind: TaskKind, base: datetime) -> None:
    """Schedule the next occurrence in its own transaction; failures are logged only."""

    try:
        with session_factory() as db:
            next_at = schedule_next_recurring_task(db, kind, base)
            db.commit()
        logger.info("recurring task scheduled kind=%s next_at=%s", kind.value, next_at.isoformat())
    except Exception:
        logger.exception("failed to schedule next recurring task kind=%s base=%s", kind.value, base.isoformat())


@contextmanager
def rescheduling(session_factory, kind: TaskKind, scheduled_at: datetime | None) -> Iterator[datetime]:
    """Run a recurring task body and always schedule its next occurrence afterwards."""

    base = parse_scheduled_at(scheduled_at)
    try:
        yield base
    finally:
        schedule_next_recurring_task_safe(session_factory, kind, base)


def seed_recurring_tasks(session_factory) -> None:
    """Ensure every recurring kind has an upcoming occurrence; used at worker startup."""

    now = datetime.now(timezone.utc)
    with session_factory() as db:
        for kind in RECURRING_TASK_KINDS:
            schedule_next_recurring_task(db, kind, now)
        db.commit()
