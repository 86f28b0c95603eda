"""Outbox dispatcher: claim ready tasks, run their handlers, settle the outcome.

Each claim is committed before the handler runs, so a crashed worker leaves a
`PROCESSING` row that becomes claimable again after the claim timeout. Handlers
therefore run at least once; they are written to be safe to re-run.
"""

import asyncio
import os
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from fitflow.common.db import utcnow
from fitflow.common.logging import bind_log_context, logger
from fitflow.common.metrics import task_duration_seconds, task_outcomes_total, task_queue_delay_seconds
from fitflow.common.outbox import (
    ClaimedTask,
    claim_tasks,
    complete_task,
    discard_task,
    normalize_error_message,
    reschedule_task,
    update_outbox_backlog_metrics,
)
from fitflow.common.tasks import TaskKind, TaskPayload, parse_task_payload
from fitflow.common.tracing import record_outcome, task_span
from fitflow.services.worker.policies import RetryPolicy, never_retry


@dataclass(frozen=True)
class TaskRegistration:
    handler: Callable[[TaskPayload], None]
    retry_policy: RetryPolicy = never_retry


class Dispatcher:
    """Pulls tasks from the outbox with `concurrency` cooperative workers."""

    def __init__(
        self,
        session_factory,
        registrations: dict[TaskKind, TaskRegistration],
        service_name: str = "workflow-worker",
        concurrency: int = 4,
        poll_interval_seconds: float = 1.5,
        claim_timeout_seconds: int = 300,
        metrics_interval_seconds: float = 15.0,
        worker_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.registrations = registrations
        self.service_name = service_name
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self.metrics_interval_seconds = metrics_interval_seconds
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self._stopping = False

    def run_once(self) -> bool:
        """Claim and execute at most one task. Returns False when nothing was ready."""

        with self.session_factory() as db:
            claimed = claim_tasks(db, self.worker_id, limit=1, processing_timeout_seconds=self.claim_timeout_seconds)
            db.commit()
        if not claimed:
            return False
        self.execute(claimed[0])
        return True

    def execute(self, task: ClaimedTask) -> str:
        """Run one claimed task and return its outcome label."""

        task_queue_delay_seconds.labels(kind=task.kind).observe(
            max(0.0, (utcnow() - task.available_at).total_seconds())
        )
        with bind_log_context(task_id=task.id, task_kind=task.kind, task_attempt=task.attempts):
            with task_span(task.kind, task.id, task.attempts) as span:
                outcome = self._execute(task)
                record_outcome(span, outcome)
        task_outcomes_total.labels(kind=task.kind, outcome=outcome).inc()
        return outcome

    def _execute(self, task: ClaimedTask) -> str:
        try:
            kind = TaskKind(task.kind)
        except ValueError:
            return self._discard(task, f"unknown task kind {task.kind!r}")
        registration = self.registrations.get(kind)
        if registration is None:
            return self._discard(task, f"no handler registered for {kind.value}")
        try:
            payload = parse_task_payload(kind, task.payload)
        except ValueError as exc:
            return self._discard(task, f"invalid payload: {exc}")

        handler_name = getattr(registration.handler, "__qualname__", repr(registration.handler))
        with bind_log_context(handler=handler_name):
            return self._run_handler(task, registration, payload)

    def _run_handler(self, task: ClaimedTask, registration: TaskRegistration, payload: TaskPayload) -> str:
        logger.info("task started kind=%s id=%s attempts=%s", task.kind, task.id, task.attempts)
        started = time.perf_counter()
        try:
            registration.handler(payload)
        except Exception as exc:
            task_duration_seconds.labels(kind=task.kind).observe(time.perf_counter() - started)
            delay = registration.retry_policy(exc)
            if delay is not None:
                return self._retry(task, delay, exc)
            logger.exception("task failed kind=%s id=%s error=%s", task.kind, task.id, exc)
            return self._discard(task, normalize_error_message(exc))
        task_duration_seconds.labels(kind=task.kind).observe(time.perf_counter() - started)

        with self.session_factory() as db:
            complete_task(db, task.id)
            db.commit()
        logger.info("task succeeded kind=%s id=%s", task.kind, task.id)
        return "succeeded"

    def _retry(self, task: ClaimedTask, delay: timedelta, exc: BaseException) -> str:
        available_at = utcnow() + delay
        with self.session_factory() as db:
            reschedule_task(db, task.id, available_at, normalize_error_message(exc))
            db.commit()
        logger.warning(
            "task rescheduled kind=%s id=%s attempts=%s available_at=%s error=%s",
            task.kind,
            task.id,
            task.attempts,
            available_at.isoformat(),
            exc,
        )
        return "retried"

    def _discard(self, task: ClaimedTask, error: str) -> str:
        with self.session_factory() as db:
            discard_task(db, task, error)
            db.commit()
        logger.error("task discarded kind=%s id=%s error=%s", task.kind, task.id, error)
        return "failed"

    def update_metrics(self) -> None:
        with self.session_factory() as db:
            update_outbox_backlog_metrics(db, self.service_name)

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            try:
                ran = await asyncio.to_thread(self.run_once)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("dispatcher loop error worker=%s error=%s", index, exc)
                ran = False
            if not ran:
                await asyncio.sleep(self.poll_interval_seconds)

    async def _metrics_loop(self) -> None:
        while not self._stopping:
            try:
                await asyncio.to_thread(self.update_metrics)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("outbox metrics update failed error=%s", exc)
            await asyncio.sleep(self.metrics_interval_seconds)

    async def run_forever(self) -> None:
        """Run workers until `stop()` is called or the surrounding task is cancelled."""

        self._stopping = False
        logger.info("dispatcher starting worker_id=%s concurrency=%s", self.worker_id, self.concurrency)
        await asyncio.gather(
            self._metrics_loop(),
            *(self._worker_loop(index) for index in range(self.concurrency)),
        )

    def stop(self) -> None:
        self._stopping = True
