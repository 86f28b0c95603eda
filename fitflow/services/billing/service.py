"""Outstanding payment-plan charges, the daily charge run, and connected-account setup."""

import hashlib
import json
from html import escape
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from fitflow.common.config import settings
from fitflow.common.localization import format_short_date
from fitflow.common.db import as_utc, utcnow
from fitflow.common.fees import (
    application_fee_amount,
    calculate_fee,
    calculate_stripe_fee,
    country_currency,
    format_money,
    get_fee,
    to_smallest_unit,
)
from fitflow.common.logging import bind_log_context, logger
from fitflow.common.metrics import charge_attempts_total
from fitflow.common.models import Client, Trainer
from fitflow.common.outbox import enqueue_task
from fitflow.common.schedules import rescheduling
from fitflow.common.tasks import (
    ChargeOutstandingPayload,
    CreateStripeAccountPayload,
    ScheduledTaskPayload,
    TaskKind,
    UserNotifyPayload,
)
from fitflow.services.billing.errors import (
    ChargeFailedBecauseNotVerified,
    NoPaymentMethodOnFile,
    PaymentGatewayNotConfigured,
    StripeCardError,
    StripePaymentsBlocked,
    StripePaymentsNotEnabled,
)
from fitflow.services.billing.gateway import (
    CardDeclinedError,
    ChargeRequest,
    GatewayError,
    PaymentGateway,
    PaymentMethod,
    PayoutsNotAllowedError,
    ResourceMissingError,
)
from fitflow.services.billing.models import (
    PaymentPlan,
    PaymentPlanCharge,
    PaymentPlanPayment,
    StripeAccount,
    StripeBalance,
    StripePaymentIntent,
)
from fitflow.services.mail.service import queue_mail
from fitflow.services.mail.templates import create_client_dashboard_link, cta_email


MAX_RETRY_COUNT = 10
RETRY_COOLDOWN = timedelta(hours=16)
METADATA_VALUE_LIMIT = 500


def eligible_payments_filter(now: datetime, for_scheduled_task: bool):
    """Rows that may be charged now.

    Pending rows need a live plan. Rejected rows are always eligible for a manual
    retry; the scheduler additionally waits out the cooldown and stops after
    `MAX_RETRY_COUNT` attempts.
    """

    rejected = [PaymentPlanPayment.status == "rejected"]
    if for_scheduled_task:
        rejected.append(
            or_(
                PaymentPlanPayment.last_retry_time.is_(None),
                PaymentPlanPayment.last_retry_time <= now - RETRY_COOLDOWN,
            )
        )
        rejected.append(PaymentPlanPayment.retry_count < MAX_RETRY_COUNT)
    return and_(
        PaymentPlanPayment.date <= now,
        PaymentPlanPayment.amount_outstanding > 0,
        or_(
            and_(
                PaymentPlanPayment.status == "pending",
                PaymentPlan.status == "active",
                PaymentPlan.end > now,
            ),
            and_(*rejected),
        ),
    )


def chunk_payment_ids_metadata(ids: list[str], limit: int = METADATA_VALUE_LIMIT) -> dict[str, str]:
    """Spread ids over `paymentPlanPaymentIds_{n}` keys, each JSON value within `limit` characters."""

    metadata: dict[str, str] = {}
    group: list[str] = []
    for payment_id in ids:
        candidate = json.dumps(group + [payment_id], separators=(",", ":"))
        if group and len(candidate) > limit:
            metadata[f"paymentPlanPaymentIds_{len(metadata)}"] = json.dumps(group, separators=(",", ":"))
            group = []
        group.append(payment_id)
    metadata[f"paymentPlanPaymentIds_{len(metadata)}"] = json.dumps(group, separators=(",", ":"))
    return metadata


def charge_idempotency_key(
    payment_plan_id: str,
    payments: list[PaymentPlanPayment],
    payment_method_id: str,
    amount: int,
) -> str:
    """Stable per attempt: the same rows at the same retry count, charged to the same
    card for the same amount in smallest units, produce the same key.
    """

    rows = ",".join(sorted(f"{payment.id}:{payment.retry_count}" for payment in payments))
    material = f"{rows}|{payment_method_id}|{amount}"
    digest = hashlib.sha256(material.encode()).hexdigest()[:32]
    return f"charge-outstanding:{payment_plan_id}:{digest}"


def generate_payment_plan_payments(db, now: datetime) -> int:
    """Create the installment rows each live plan is owed up to `now`; returns how many were added.

    A plan owes one installment every `frequency_weekly_interval` weeks from its
    start until the earlier of its end and `now`. Only the shortfall is created,
    newest dates first, and never on or before the last existing installment's
    period.
    """

    plans = (
        db.execute(select(PaymentPlan).where(PaymentPlan.status.not_in(("ended", "cancelled"))).with_for_update())
        .scalars()
        .all()
    )
    created = 0
    for plan in plans:
        interval = timedelta(weeks=plan.frequency_weekly_interval)
        existing, latest = db.execute(
            select(func.count(PaymentPlanPayment.id), func.max(PaymentPlanPayment.date)).where(
                PaymentPlanPayment.payment_plan_id == plan.id
            )
        ).one()

        series = []
        due_date, last = as_utc(plan.start), min(as_utc(plan.end), now)
        while due_date <= last:
            series.append(due_date)
            due_date += interval
        missing = len(series) - existing
        if missing <= 0:
            continue

        if latest is not None:
            after = as_utc(latest) + interval - timedelta(days=1)
            series = [due_date for due_date in series if due_date > after]
        status = "paused" if plan.status == "paused" else "pending"
        for due_date in sorted(series, reverse=True)[:missing]:
            db.add(
                PaymentPlanPayment(
                    payment_plan_id=plan.id,
                    trainer_id=plan.trainer_id,
                    date=due_date,
                    status=status,
                    amount=plan.amount,
                    amount_outstanding=plan.amount,
                )
            )
            created += 1
    db.flush()
    return created


class BillingService:
    """Handlers for payment-plan charging and connected-account provisioning."""

    def __init__(self, session_factory, gateway: PaymentGateway | None) -> None:
        self.session_factory = session_factory
        self.gateway = gateway

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise PaymentGatewayNotConfigured()
        return self.gateway

    def _forget_customer(self, customer_id: str) -> None:
        # Own transaction: the charge transaction is about to roll back.
        with self.session_factory() as db:
            db.execute(update(Client).where(Client.stripe_customer_id == customer_id).values(stripe_customer_id=None))
            db.commit()
        logger.info("removed missing processor customer customer_id=%s", customer_id)

    def _default_payment_method(self, customer_id: str, account: str | None) -> PaymentMethod | None:
        """First card on file; any others are detached best-effort."""

        gateway = self._require_gateway()
        try:
            methods = gateway.list_payment_methods(customer_id, account=account)
        except ResourceMissingError:
            self._forget_customer(customer_id)
            return None
        if not methods:
            return None
        default, *rest = methods
        for method in rest:
            try:
                gateway.detach_payment_method(method.id, account=account)
            except GatewayError as exc:
                logger.warning("failed to detach extra payment method id=%s error=%s", method.id, exc)
        return default

    def handle_charge_outstanding(self, payload: ChargeOutstandingPayload) -> None:
        """Charge every eligible installment of one plan with a single payment intent."""

        self._require_gateway()
        with bind_log_context(payment_plan_id=payload.payment_plan_id):
            with self.session_factory() as db:
                self._charge_outstanding(db, payload)

    def _charge_outstanding(self, db, payload: ChargeOutstandingPayload) -> None:
        gateway = self._require_gateway()
        now = utcnow()
        rows = db.execute(
            select(PaymentPlanPayment, PaymentPlan, Trainer, Client, StripeAccount)
            .join(PaymentPlan, PaymentPlanPayment.payment_plan_id == PaymentPlan.id)
            .join(Trainer, PaymentPlan.trainer_id == Trainer.id)
            .join(Client, PaymentPlan.client_id == Client.id)
            .outerjoin(StripeAccount, StripeAccount.id == Trainer.stripe_account_id)
            .where(
                PaymentPlanPayment.payment_plan_id == payload.payment_plan_id,
                eligible_payments_filter(now, payload.for_scheduled_task),
            )
            .order_by(PaymentPlanPayment.date)
            .with_for_update(of=PaymentPlanPayment)
        ).all()
        if not rows:
            logger.info("no outstanding payments payment_plan_id=%s", payload.payment_plan_id)
            return

        payments = [row.PaymentPlanPayment for row in rows]
        plan, trainer, client, account = rows[0].PaymentPlan, rows[0].Trainer, rows[0].Client, rows[0].StripeAccount
        trainer_user_id, client_id = trainer.user_id, client.id

        if not client.stripe_customer_id:
            raise NoPaymentMethodOnFile()
        if trainer.stripe_payments_blocked:
            raise StripePaymentsBlocked()
        if not trainer.stripe_account_id or account is None:
            raise StripePaymentsNotEnabled()

        account_id = account.id
        account_type = account.account_type
        method = self._default_payment_method(
            client.stripe_customer_id,
            account=account_id if account_type == "standard" else None,
        )
        if method is None:
            raise NoPaymentMethodOnFile()

        charge_country = trainer.country.upper()
        card_country = method.card_country or charge_country
        currency = country_currency(charge_country)

        total = sum((Decimal(payment.amount_outstanding) for payment in payments), Decimal(0))
        amount = to_smallest_unit(total, currency)
        idempotency_key = charge_idempotency_key(payload.payment_plan_id, payments, method.id, amount)
        fees = {
            payment.id: calculate_fee(card_country, charge_country, currency, payment.amount_outstanding)
            for payment in payments
        }
        application_fee = sum(fees.values(), Decimal(0))
        payment_dates = ",".join(format_short_date(payment.date, trainer.locale) for payment in payments)

        # Rows are marked paid before the charge call; a failed call rolls this back.
        # Each update only matches the row as it was read, so a concurrent charge of
        # the same rows (possible where row locks are unavailable) matches nothing.
        updated_at = utcnow()
        marked = 0
        for payment in payments:
            marked += db.execute(
                update(PaymentPlanPayment)
                .where(
                    PaymentPlanPayment.id == payment.id,
                    PaymentPlanPayment.status == payment.status,
                    PaymentPlanPayment.retry_count == payment.retry_count,
                )
                .values(
                    status="paid",
                    amount_outstanding=Decimal(0),
                    retry_count=PaymentPlanPayment.retry_count + 1,
                    last_retry_time=updated_at,
                    fee=fees[payment.id],
                )
            ).rowcount
        if marked != len(payments):
            db.rollback()
            charge_attempts_total.labels(outcome="conflict").inc()
            logger.warning(
                "outstanding payments changed while charging, skipped payment_plan_id=%s", payload.payment_plan_id
            )
            return

        enqueue_task(
            db,
            TaskKind.USER_NOTIFY,
            UserNotifyPayload(
                user_id=trainer_user_id,
                title=client.full_name,
                body=(
                    "Payment Processed!\n"
                    f"Payment of {format_money(total, currency)} has gone through for subscription: {plan.name}"
                ),
                message_type="success",
                notification_type="transaction",
                payment_plan_id=payload.payment_plan_id,
            ),
        )
        db.execute(delete(StripeBalance).where(StripeBalance.account_id == account_id))
        db.flush()

        quote = get_fee(card_country, charge_country, currency)
        net_fee = application_fee_amount(
            application_fee,
            calculate_stripe_fee(card_country, charge_country, currency, total),
            account_type,
        )
        request = ChargeRequest(
            amount=amount,
            currency=currency,
            customer=client.stripe_customer_id,
            payment_method=method.id,
            application_fee_amount=to_smallest_unit(net_fee, currency),
            connected_account=account_id,
            account_type=account_type,
            description=f"{plan.name} Outstanding Payments for {payment_dates}",
            idempotency_key=idempotency_key,
            metadata={
                **chunk_payment_ids_metadata([payment.id for payment in payments]),
                "fixedFee": str(quote.fixed_fee),
                "percentageFee": str(quote.percentage_fee),
            },
            receipt_email=client.email if trainer.send_receipts and client.email else None,
            statement_descriptor_suffix=f"VIA {settings.app_name}"[:22],
        )

        try:
            intent = gateway.create_payment_intent(request)
        except CardDeclinedError as exc:
            db.rollback()
            charge_attempts_total.labels(outcome="declined").inc()
            raise StripeCardError(str(exc), decline_code=exc.decline_code) from exc
        except ResourceMissingError as exc:
            db.rollback()
            charge_attempts_total.labels(outcome="no_payment_method").inc()
            raise NoPaymentMethodOnFile() from exc
        except PayoutsNotAllowedError as exc:
            db.rollback()
            charge_attempts_total.labels(outcome="payouts_not_allowed").inc()
            enqueue_task(
                db,
                TaskKind.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer_user_id,
                    title="Charge failed - Verification required",
                    body=(
                        "A card charge was attempted against one of your clients but failed "
                        "because Stripe requires further verification."
                    ),
                    message_type="failure",
                    notification_type="general",
                    client_id=client_id,
                ),
            )
            db.commit()
            raise ChargeFailedBecauseNotVerified() from exc
        except GatewayError:
            db.rollback()
            charge_attempts_total.labels(outcome="error").inc()
            raise

        try:
            with db.begin_nested():
                db.merge(
                    StripePaymentIntent(
                        id=intent.id,
                        api_version=gateway.api_version.split(".")[0],
                        object=intent.raw,
                    )
                )
                db.add_all(
                    PaymentPlanCharge(payment_plan_payment_id=payment.id, stripe_payment_intent_id=intent.id)
                    for payment in payments
                )
        except SQLAlchemyError:
            logger.exception(
                "failed to persist payment plan charge payment_plan_id=%s payment_intent_id=%s",
                payload.payment_plan_id,
                intent.id,
            )

        db.commit()
        charge_attempts_total.labels(outcome="succeeded").inc()
        logger.info(
            "outstanding payments charged payment_plan_id=%s payments=%s amount=%s currency=%s intent=%s",
            payload.payment_plan_id,
            len(payments),
            total,
            currency,
            intent.id,
        )

    def handle_charge_payment_plans(self, payload: ScheduledTaskPayload) -> None:
        """Daily run: end expired plans, create the installments that fell due, then charge every plan with eligible installments."""

        with rescheduling(self.session_factory, TaskKind.CHARGE_PAYMENT_PLANS, payload.scheduled_at):
            self._require_gateway()
            now = utcnow()
            with self.session_factory() as db:
                ended = db.execute(
                    update(PaymentPlan)
                    .where(PaymentPlan.end <= now, PaymentPlan.status.not_in(("cancelled", "ended")))
                    .values(status="ended")
                ).rowcount
                generated = generate_payment_plan_payments(db, now)
                db.commit()
            with self.session_factory() as db:
                plan_ids = (
                    db.execute(
                        select(PaymentPlanPayment.payment_plan_id)
                        .join(PaymentPlan, PaymentPlanPayment.payment_plan_id == PaymentPlan.id)
                        .where(eligible_payments_filter(now, True))
                        .distinct()
                    )
                    .scalars()
                    .all()
                )
            logger.info(
                "charging payment plans plans=%s ended=%s generated=%s", len(plan_ids), ended, generated
            )

            for plan_id in plan_ids:
                try:
                    self.handle_charge_outstanding(
                        ChargeOutstandingPayload(payment_plan_id=plan_id, for_scheduled_task=True)
                    )
                except Exception as exc:
                    logger.warning("payment plan charge failed payment_plan_id=%s error=%s", plan_id, exc)
                    self._record_charge_failure(plan_id, exc, now)

    def _record_charge_failure(self, plan_id: str, error: Exception, now: datetime) -> None:
        """Reject the still-eligible rows and tell the trainer, and the client when we can."""

        with self.session_factory() as db:
            rows = db.execute(
                select(PaymentPlanPayment, PaymentPlan, Trainer, Client)
                .join(PaymentPlan, PaymentPlanPayment.payment_plan_id == PaymentPlan.id)
                .join(Trainer, PaymentPlan.trainer_id == Trainer.id)
                .join(Client, PaymentPlan.client_id == Client.id)
                .where(PaymentPlan.id == plan_id, eligible_payments_filter(now, True))
                .with_for_update(of=PaymentPlanPayment)
            ).all()
            if not rows:
                return

            plan, trainer, client = rows[0].PaymentPlan, rows[0].Trainer, rows[0].Client
            client_actionable = isinstance(error, (NoPaymentMethodOnFile, StripeCardError))
            if client_actionable and client.email:
                body = (
                    f"A payment for Subscription: {plan.name} has failed. "
                    "We've already let your client know and will try again tomorrow."
                )
            elif client_actionable:
                body = (
                    f"A payment for Subscription: {plan.name} has failed. We couldn't notify your client "
                    "because they don't have an email on file, but we will try again tomorrow."
                )
            else:
                body = f"A payment for Subscription: {plan.name} has failed. We will try again tomorrow"

            for row in rows:
                payment = row.PaymentPlanPayment
                payment.status = "rejected"
                payment.retry_count = payment.retry_count + 1
                payment.last_retry_time = now

            enqueue_task(
                db,
                TaskKind.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer.user_id,
                    title=client.full_name,
                    body=body,
                    message_type="failure",
                    notification_type="transaction",
                    payment_plan_id=plan_id,
                ),
            )

            if client_actionable and client.email:
                provider = trainer.service_provider_name
                link = create_client_dashboard_link(db, client.id, client.email)
                reason = escape(str(error))
                because = f' because:</p> <p style="font-weight:700;">{reason}</p>' if reason else ".</p>"
                queue_mail(
                    db,
                    from_name=f"{provider} via {settings.app_name}",
                    to_email=client.email,
                    trainer_id=trainer.id,
                    client_id=client.id,
                    subject=f"{provider} via {settings.app_name}: Subscription Payment Failed",
                    html=cta_email(
                        body_heading="Subscription Payment Failed",
                        body_html=(
                            "<p>Hi, </p>"
                            "<p>Just a quick email to let you know we tried to deduct a subscription payment "
                            f"out of your account on behalf of {provider} but unfortunately it failed{because}"
                            "<p>We'll try again in another 24 hours. However if you need to update your card "
                            "details or wish to resolve this before we next try, click "
                            f'<a href="{link}">here</a> to access your account.</p>'
                            f"<p>Best Regards</p><p>The {settings.app_name} Team</p>"
                        ),
                        receiving_reason=f"you have a subscription with {provider}",
                        button_text="Go to Dashboard",
                        button_link=link,
                        logo_url=trainer.business_logo_url,
                        logo_alt=provider,
                        brand_color=trainer.brand_color,
                    ),
                )
            db.commit()

    def handle_create_stripe_account(self, payload: CreateStripeAccountPayload) -> None:
        """Provision a standard connected account for a trainer that has none."""

        gateway = self._require_gateway()
        with self.session_factory() as db:
            trainer = db.execute(
                select(Trainer).where(Trainer.id == payload.trainer_id).with_for_update()
            ).scalar_one_or_none()
            if trainer is None or trainer.stripe_account_id:
                return

            account = gateway.create_account(trainer.country.upper(), "standard")
            db.merge(
                StripeAccount(
                    id=account.id,
                    account_type=account.type,
                    api_version=gateway.api_version.split(".")[0],
                    object=account.raw,
                )
            )
            trainer.stripe_account_id = account.id
            db.commit()
        logger.info("connected account created trainer_id=%s account_id=%s", payload.trainer_id, account.id)
