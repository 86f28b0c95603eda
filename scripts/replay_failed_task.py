"""Re-enqueue one recorded task failure.

The replayed task carries the failed task's original payload. Handlers are safe
to re-run, so replaying a task that partially succeeded does not duplicate work
that was already committed.
"""

import argparse

from sqlalchemy import or_, select

from fitflow.common.db import SessionLocal
from fitflow.common.models import TaskFailure
from fitflow.common.outbox import enqueue_task


def replay_once(failure_id: str, dry_run: bool, keep: bool) -> int:
    """Find one failure by its id or by the failed task id and enqueue it again."""

    with SessionLocal() as db:
        failure = db.execute(
            select(TaskFailure)
            .where(or_(TaskFailure.id == failure_id, TaskFailure.task_id == failure_id))
            .order_by(TaskFailure.failed_at.desc())
        ).scalars().first()
        if failure is None:
            print("No matching task failure found.")
            return 1

        print(
            f"Matched failure id={failure.id} task_id={failure.task_id} kind={failure.kind} "
            f"attempts={failure.attempts} error={failure.error}"
        )
        if dry_run:
            print("Dry run only; nothing enqueued.")
            return 0

        try:
            task_id = enqueue_task(db, failure.kind, failure.payload)
        except ValueError as exc:
            print(f"Failure is not replayable: {exc}")
            return 2
        if not keep:
            db.delete(failure)
        db.commit()
        print(f"Enqueued replay task_id={task_id}")
        return 0


def main() -> None:
    """CLI entrypoint for replaying discarded tasks."""

    parser = argparse.ArgumentParser(description="Replay one recorded task failure back into the outbox.")
    parser.add_argument("failure_id", help="Failure record id or the failed task id")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--keep", action="store_true", help="Keep the failure record after replaying")
    args = parser.parse_args()

    raise SystemExit(replay_once(args.failure_id, dry_run=args.dry_run, keep=args.keep))


if __name__ == "__main__":
    main()
