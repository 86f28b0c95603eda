"""Enqueue one workflow task from the command line."""

import argparse
import json
from datetime import datetime

from fitflow.common.db import SessionLocal
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import TaskKind


def main() -> None:
    """CLI entrypoint for manual task submission, e.g. a one-off charge retry."""

    parser = argparse.ArgumentParser(description="Insert one task into the workflow outbox.")
    parser.add_argument("kind", choices=[kind.value for kind in TaskKind])
    parser.add_argument("payload", help='JSON payload, e.g. \'{"paymentPlanId": "..."}\'')
    parser.add_argument("--available-at", default=None, help="ISO-8601 time before which the task is not run")
    parser.add_argument("--dedupe-key", default=None)
    args = parser.parse_args()

    available_at = datetime.fromisoformat(args.available_at) if args.available_at else None
    with SessionLocal() as db:
        task_id = enqueue_task(
            db,
            args.kind,
            json.loads(args.payload),
            available_at=available_at,
            dedupe_key=args.dedupe_key,
        )
        db.commit()
    if task_id is None:
        print(f"Task with dedupe key {args.dedupe_key} already exists; nothing enqueued.")
        return
    print(f"Enqueued task_id={task_id} kind={args.kind}")


if __name__ == "__main__":
    main()
