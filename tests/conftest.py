"""Shared fixtures: a throwaway SQLite database per test plus in-memory provider fakes."""

from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from fitflow.common.db import Base, utcnow
from fitflow.common.models import Client, Task, Trainer
from fitflow.services.appstore import models as _appstore_models  # noqa: F401
from fitflow.services.billing.gateway import ChargeRequest, ConnectedAccount, PaymentIntentResult, PaymentMethod
from fitflow.services.billing.models import PaymentPlan, PaymentPlanPayment, StripeAccount
from fitflow.services.mail import models as _mail_models  # noqa: F401
from fitflow.services.notification.apns import PushFailure, PushResult
from fitflow.services.notification import models as _notification_models  # noqa: F401
from fitflow.services.sms import models as _sms_models  # noqa: F401


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'workflow.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def trainer(session_factory):
    with session_factory() as db:
        account = StripeAccount(id="acct_1", account_type="standard", api_version="2024-06-20", object={"type": "standard"})
        row = Trainer(
            user_id="user-trainer-1",
            email="coach@example.com",
            first_name="Sam",
            last_name="Coach",
            business_name="Sam Fitness",
            country="US",
            timezone="UTC",
            stripe_account_id=account.id,
        )
        db.add_all([account, row])
        db.commit()
        return row


@pytest.fixture
def client(session_factory, trainer):
    with session_factory() as db:
        row = Client(
            trainer_id=trainer.id,
            first_name="Alex",
            last_name="Client",
            email="alex@example.com",
            stripe_customer_id="cus_1",
        )
        db.add(row)
        db.commit()
        return row


@pytest.fixture
def plan(session_factory, trainer, client):
    now = utcnow()
    with session_factory() as db:
        row = PaymentPlan(
            trainer_id=trainer.id,
            client_id=client.id,
            name="Monthly PT",
            status="active",
            start=now - timedelta(days=90),
            end=now + timedelta(days=90),
        )
        db.add(row)
        db.commit()
        return row


@pytest.fixture
def add_payment(session_factory, plan):
    """Insert one installment for `plan`; keyword overrides any column."""

    def _add(amount: str = "50.00", days_ago: float = 1, **overrides) -> PaymentPlanPayment:
        values = dict(
            payment_plan_id=plan.id,
            trainer_id=plan.trainer_id,
            date=utcnow() - timedelta(days=days_ago),
            status="pending",
            amount=Decimal(amount),
            amount_outstanding=Decimal(amount),
            retry_count=0,
        )
        values.update(overrides)
        with session_factory() as db:
            row = PaymentPlanPayment(**values)
            db.add(row)
            db.commit()
            return row

    return _add


@pytest.fixture
def tasks(session_factory):
    """Return the current outbox rows, optionally filtered by kind."""

    def _tasks(kind: str | None = None) -> list[Task]:
        with session_factory() as db:
            query = select(Task).order_by(Task.created_at)
            if kind is not None:
                query = query.where(Task.kind == kind)
            return list(db.execute(query).scalars().all())

    return _tasks


class FakeGateway:
    api_version = "2024-06-20"

    def __init__(self) -> None:
        self.payment_methods = [PaymentMethod(id="pm_1", card_country="US")]
        self.list_error: Exception | None = None
        self.charge_error: Exception | None = None
        self.requests: list[ChargeRequest] = []
        self.detached: list[str] = []
        self.accounts: list[tuple[str, str]] = []
        self.external_accounts: dict[str, dict[str, Any]] = {}
        self.external_account_requests: list[tuple[str, str]] = []
        self.external_account_error: Exception | None = None

    def list_payment_methods(self, customer: str, account: str | None = None) -> list[PaymentMethod]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.payment_methods)

    def detach_payment_method(self, payment_method_id: str, account: str | None = None) -> None:
        self.detached.append(payment_method_id)

    def create_payment_intent(self, request: ChargeRequest) -> PaymentIntentResult:
        self.requests.append(request)
        if self.charge_error is not None:
            raise self.charge_error
        intent_id = f"pi_{len(self.requests)}"
        return PaymentIntentResult(
            id=intent_id,
            status="succeeded",
            raw={"id": intent_id, "object": "payment_intent", "amount": request.amount},
        )

    def retrieve_external_account(self, account: str, external_account_id: str) -> dict[str, Any]:
        self.external_account_requests.append((account, external_account_id))
        if self.external_account_error is not None:
            raise self.external_account_error
        return dict(self.external_accounts[external_account_id])

    def create_account(self, country: str, account_type: str = "standard") -> ConnectedAccount:
        self.accounts.append((country, account_type))
        account_id = f"acct_new_{len(self.accounts)}"
        return ConnectedAccount(id=account_id, type=account_type, raw={"id": account_id, "type": account_type})


class FakePush:
    def __init__(self, failures: list[PushFailure] | None = None) -> None:
        self.failures = failures or []
        self.calls: list[tuple[dict, list[str]]] = []

    def send(self, payload: dict, device_tokens: list[str]) -> PushResult:
        self.calls.append((payload, list(device_tokens)))
        failed = [failure for failure in self.failures if failure.device in device_tokens]
        failed_devices = {failure.device for failure in failed}
        return PushResult(sent=[token for token in device_tokens if token not in failed_devices], failed=failed)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def push():
    return FakePush()
