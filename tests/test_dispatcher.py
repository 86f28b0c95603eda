"""Dispatcher outcomes and retry policy behaviour."""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from fitflow.common.db import as_utc, utcnow
from fitflow.common.logging import TaskContextFilter, bind_log_context, log_context
from fitflow.common.models import Task, TaskFailure
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import ChargeOutstandingPayload, TaskKind
from fitflow.services.mail.mandrill import MandrillError
from fitflow.services.worker.dispatcher import Dispatcher, TaskRegistration
from fitflow.services.worker.policies import first_of, is_transient, never_retry, retry_on, retry_on_database_outage


def _enqueue_charge(session_factory, plan_id="plan-1"):
    with session_factory() as db:
        task_id = enqueue_task(db, TaskKind.CHARGE_OUTSTANDING, {"paymentPlanId": plan_id})
        db.commit()
        return task_id


def _dispatcher(session_factory, handler, retry_policy=never_retry, **kwargs):
    registrations = {TaskKind.CHARGE_OUTSTANDING: TaskRegistration(handler, retry_policy)}
    return Dispatcher(session_factory, registrations, worker_id="test-worker", **kwargs)


def test_run_once_returns_false_when_outbox_is_empty(session_factory):
    dispatcher = _dispatcher(session_factory, lambda payload: None)
    assert dispatcher.run_once() is False


def test_successful_task_is_deleted(session_factory):
    """Handlers receive the typed payload; success removes the row."""

    seen = []
    task_id = _enqueue_charge(session_factory)
    dispatcher = _dispatcher(session_factory, seen.append)

    assert dispatcher.run_once() is True

    assert len(seen) == 1
    assert isinstance(seen[0], ChargeOutstandingPayload)
    assert seen[0].payment_plan_id == "plan-1"
    with session_factory() as db:
        assert db.get(Task, task_id) is None
        assert db.execute(select(TaskFailure)).first() is None


def test_retryable_failure_is_rescheduled(session_factory):
    def handler(payload):
        raise MandrillError("provider down", transient=True)

    task_id = _enqueue_charge(session_factory)
    policy = retry_on(MandrillError, delay=timedelta(minutes=5), predicate=is_transient)
    before = utcnow()

    dispatcher = _dispatcher(session_factory, handler, policy)
    assert dispatcher.run_once() is True

    with session_factory() as db:
        task = db.get(Task, task_id)
        assert task.status == "PENDING"
        assert task.attempts == 1
        assert task.last_error == "MandrillError: provider down"
        assert as_utc(task.available_at) >= before + timedelta(minutes=5)

    # Not available yet, so nothing else runs.
    assert dispatcher.run_once() is False


def test_terminal_failure_removes_task_and_records_failure(session_factory):
    def handler(payload):
        raise RuntimeError("card declined")

    task_id = _enqueue_charge(session_factory)
    dispatcher = _dispatcher(session_factory, handler)

    assert dispatcher.run_once() is True
    with session_factory() as db:
        assert db.get(Task, task_id) is None
        failure = db.execute(select(TaskFailure)).scalar_one()
        assert failure.task_id == task_id
        assert failure.kind == TaskKind.CHARGE_OUTSTANDING.value
        assert failure.error == "RuntimeError: card declined"


def test_unknown_kind_is_discarded(session_factory):
    with session_factory() as db:
        db.add(Task(kind="bogus.kind", payload={}, status="PENDING", available_at=utcnow(), attempts=0))
        db.commit()

    dispatcher = _dispatcher(session_factory, lambda payload: None)
    assert dispatcher.run_once() is True

    with session_factory() as db:
        assert db.execute(select(Task)).first() is None
        failure = db.execute(select(TaskFailure)).scalar_one()
        assert "unknown task kind" in failure.error


def test_invalid_payload_is_discarded_without_calling_handler(session_factory):
    calls = []
    with session_factory() as db:
        db.add(
            Task(
                kind=TaskKind.CHARGE_OUTSTANDING.value,
                payload={"paymentPlanId": ""},
                status="PENDING",
                available_at=utcnow(),
                attempts=0,
            )
        )
        db.commit()

    dispatcher = _dispatcher(session_factory, calls.append)
    assert dispatcher.run_once() is True

    assert calls == []
    with session_factory() as db:
        failure = db.execute(select(TaskFailure)).scalar_one()
        assert failure.error.startswith("invalid payload")


def test_kind_without_registration_is_discarded(session_factory):
    with session_factory() as db:
        enqueue_task(db, TaskKind.SEND_MAIL, {"id": "mail-1"})
        db.commit()

    dispatcher = _dispatcher(session_factory, lambda payload: None)
    assert dispatcher.run_once() is True

    with session_factory() as db:
        failure = db.execute(select(TaskFailure)).scalar_one()
        assert failure.kind == TaskKind.SEND_MAIL.value


def test_run_forever_processes_until_stopped(session_factory):
    processed = []
    for index in range(3):
        _enqueue_charge(session_factory, plan_id=f"plan-{index}")

    dispatcher = None

    def handler(payload):
        processed.append(payload.payment_plan_id)
        if len(processed) == 3:
            dispatcher.stop()

    dispatcher = _dispatcher(
        session_factory,
        handler,
        concurrency=2,
        poll_interval_seconds=0.01,
        metrics_interval_seconds=0.01,
    )
    asyncio.run(asyncio.wait_for(dispatcher.run_forever(), timeout=10))

    assert sorted(processed) == ["plan-0", "plan-1", "plan-2"]


def test_retry_policies_compose():
    transient = MandrillError("down", transient=True)
    permanent = MandrillError("bad request", status_code=400)
    outage = OperationalError("SELECT 1", {}, Exception("connection refused"))

    provider = retry_on(MandrillError, delay=timedelta(minutes=5), predicate=is_transient)
    combined = first_of(provider, retry_on_database_outage)

    assert provider(transient) == timedelta(minutes=5)
    assert provider(permanent) is None
    assert combined(outage) == timedelta(minutes=1)
    assert combined(ValueError("nope")) is None
    assert never_retry(transient) is None


def test_handler_runs_with_task_and_handler_bound_to_logs(session_factory):
    seen = []

    def charge_plan(payload):
        seen.append(dict(log_context.get()))

    task_id = _enqueue_charge(session_factory)
    _dispatcher(session_factory, charge_plan).run_once()

    [bound] = seen
    assert bound["task_id"] == task_id
    assert bound["task_kind"] == TaskKind.CHARGE_OUTSTANDING.value
    assert bound["task_attempt"] == 1
    assert bound["handler"].endswith("charge_plan")
    assert log_context.get() == {}


def test_log_records_carry_nested_bindings():
    record = logging.LogRecord("fitflow", logging.INFO, __file__, 1, "charged", None, None)

    with bind_log_context(task_id="t-1", task_attempt=2):
        with bind_log_context(payment_plan_id="plan-1"):
            TaskContextFilter().filter(record)

    assert (record.task_id, record.task_attempt, record.payment_plan_id) == ("t-1", 2, "plan-1")
    assert record.handler == ""
