"""Billing persistence models: payment plans, installments, and processor records."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from fitflow.common.db import Base, JSONType


class PaymentPlan(Base):
    """A recurring subscription a client pays a trainer."""

    __tablename__ = "payment_plans"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    trainer_id: Mapped[str] = mapped_column(ForeignKey("trainers.id"), index=True)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")
    start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal(0))
    frequency_weekly_interval: Mapped[int] = mapped_column(Integer, default=4)


class PaymentPlanPayment(Base):
    """One scheduled installment of a payment plan."""

    __tablename__ = "payment_plan_payments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_plan_id: Mapped[str] = mapped_column(ForeignKey("payment_plans.id"), index=True)
    trainer_id: Mapped[str] = mapped_column(ForeignKey("trainers.id"), index=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    amount_outstanding: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)


class StripeAccount(Base):
    """Trainer's connected payment-receiving account."""

    __tablename__ = "stripe_accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_type: Mapped[str] = mapped_column(String)
    api_version: Mapped[str] = mapped_column(String)
    object: Mapped[dict] = mapped_column(JSONType)


class StripePaymentIntent(Base):
    __tablename__ = "stripe_payment_intents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    api_version: Mapped[str] = mapped_column(String)
    object: Mapped[dict] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentPlanCharge(Base):
    """Links one external charge to every installment it covered."""

    __tablename__ = "payment_plan_charges"

    payment_plan_payment_id: Mapped[str] = mapped_column(ForeignKey("payment_plan_payments.id"), primary_key=True)
    stripe_payment_intent_id: Mapped[str] = mapped_column(String, primary_key=True)


class StripeBalance(Base):
    """Cached connected-account balance; removed whenever a new charge lands."""

    __tablename__ = "stripe_balances"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    object: Mapped[dict] = mapped_column(JSONType)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ClientPaymentReminder(Base):
    """One overdue-payment reminder sent to a client."""

    __tablename__ = "client_payment_reminders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    trainer_id: Mapped[str] = mapped_column(ForeignKey("trainers.id"), index=True)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id"), index=True)
    send_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    send_success: Mapped[bool] = mapped_column(Boolean, default=True)


class StripeEvent(Base):
    """Webhook event as received; `processed_at` is set once `processStripeEvent` has run."""

    __tablename__ = "stripe_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String, index=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    account: Mapped[str | None] = mapped_column(String, nullable=True)
    created: Mapped[int] = mapped_column(BigInteger)
    object: Mapped[dict] = mapped_column(JSONType)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StripeResource(Base):
    """Latest known state of any other processor object an event carried (payouts, disputes, charges...)."""

    __tablename__ = "stripe_resources"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    object_type: Mapped[str] = mapped_column(String, index=True)
    account: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    api_version: Mapped[str | None] = mapped_column(String, nullable=True)
    object: Mapped[dict] = mapped_column(JSONType)
