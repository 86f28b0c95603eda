"""Recurring overdue-payment reminders to clients."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select

from fitflow.common.config import settings
from fitflow.common.db import as_utc, utcnow
from fitflow.common.logging import logger
from fitflow.common.models import Client, Trainer
from fitflow.common.outbox import enqueue_task
from fitflow.common.schedules import rescheduling
from fitflow.common.tasks import ScheduledTaskPayload, TaskKind, UserNotifyPayload
from fitflow.services.billing.models import ClientPaymentReminder, PaymentPlan, PaymentPlanPayment
from fitflow.services.mail.service import queue_mail
from fitflow.services.mail.templates import create_client_dashboard_link, cta_email


OVERDUE_GRACE = timedelta(days=2)
REMINDER_WINDOW_END = timedelta(days=15)
LAST_REMINDER_AFTER = timedelta(days=13)
REMINDER_COOLDOWN = timedelta(hours=47)
LOCAL_SEND_HOURS = range(8, 20)


@dataclass(frozen=True)
class DueReminder:
    trainer_id: str
    client_id: str
    most_overdue: datetime
    overdue_count: int
    latest_remind_time: datetime | None


def trainer_local_hour(timezone_name: str, now: datetime) -> int:
    try:
        zone = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown trainer timezone=%s, using UTC", timezone_name)
        zone = ZoneInfo("UTC")
    return now.astimezone(zone).hour


def is_reminder_due(reminder: DueReminder, now: datetime) -> bool:
    """Inside the reminder window and past the cooldown since the previous reminder."""

    if not (reminder.most_overdue + OVERDUE_GRACE <= now < reminder.most_overdue + REMINDER_WINDOW_END):
        return False
    return reminder.latest_remind_time is None or now > reminder.latest_remind_time + REMINDER_COOLDOWN


class PaymentReminderService:
    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def due_reminders(self, db, now: datetime) -> list[DueReminder]:
        """Per trainer and client: rejected installments overdue by more than the grace period."""

        overdue = (
            select(
                PaymentPlanPayment.trainer_id.label("trainer_id"),
                PaymentPlan.client_id.label("client_id"),
                func.max(PaymentPlanPayment.date).label("most_overdue"),
                func.count().label("overdue_count"),
            )
            .join(PaymentPlan, PaymentPlanPayment.payment_plan_id == PaymentPlan.id)
            .where(PaymentPlanPayment.status == "rejected", PaymentPlanPayment.date < now - OVERDUE_GRACE)
            .group_by(PaymentPlanPayment.trainer_id, PaymentPlan.client_id)
            .subquery()
        )
        latest = (
            select(
                ClientPaymentReminder.trainer_id,
                ClientPaymentReminder.client_id,
                func.max(ClientPaymentReminder.send_time).label("latest_remind_time"),
            )
            .group_by(ClientPaymentReminder.trainer_id, ClientPaymentReminder.client_id)
            .subquery()
        )
        rows = db.execute(
            select(overdue, latest.c.latest_remind_time).outerjoin(
                latest,
                (latest.c.trainer_id == overdue.c.trainer_id) & (latest.c.client_id == overdue.c.client_id),
            )
        ).all()
        return [
            DueReminder(
                trainer_id=row.trainer_id,
                client_id=row.client_id,
                most_overdue=as_utc(row.most_overdue),
                overdue_count=int(row.overdue_count),
                latest_remind_time=as_utc(row.latest_remind_time),
            )
            for row in rows
        ]

    def handle_send_payment_reminders(self, payload: ScheduledTaskPayload) -> None:
        with rescheduling(self.session_factory, TaskKind.SEND_PAYMENT_REMINDERS, payload.scheduled_at):
            now = self.clock()
            with self.session_factory() as db:
                candidates = [reminder for reminder in self.due_reminders(db, now) if is_reminder_due(reminder, now)]
            sent = 0
            for reminder in candidates:
                with self.session_factory() as db:
                    if self._remind(db, reminder, now):
                        sent += 1
                    db.commit()
            logger.info("payment reminders processed candidates=%s emailed=%s", len(candidates), sent)

    def _remind(self, db, reminder: DueReminder, now: datetime) -> bool:
        trainer = db.get(Trainer, reminder.trainer_id)
        client = db.get(Client, reminder.client_id)
        if trainer is None or client is None:
            return False
        if trainer_local_hour(trainer.timezone, now) not in LOCAL_SEND_HOURS:
            return False

        if not client.email:
            enqueue_task(
                db,
                TaskKind.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer.user_id,
                    title=client.full_name,
                    body=(
                        "We attempted to send them a payment reminder but there is no email on file. "
                        "Add one to help you get paid."
                    ),
                    message_type="failure",
                    notification_type="reminder",
                    client_id=client.id,
                ),
            )
            return False

        db.add(
            ClientPaymentReminder(trainer_id=trainer.id, client_id=client.id, send_time=now, send_success=True)
        )
        if now - reminder.most_overdue >= LAST_REMINDER_AFTER:
            enqueue_task(
                db,
                TaskKind.USER_NOTIFY,
                UserNotifyPayload(
                    user_id=trainer.user_id,
                    title=client.full_name,
                    body=(
                        "We've reminded this client about outstanding payments over the past 14 days. "
                        "We'd suggest following up."
                    ),
                    message_type="default",
                    notification_type="reminder",
                    client_id=client.id,
                ),
            )

        provider = trainer.service_provider_name
        link = create_client_dashboard_link(db, client.id, client.email)
        overdue_label = "outstanding payments" if reminder.overdue_count > 1 else "an outstanding payment"
        queue_mail(
            db,
            from_name=f"{provider} via {settings.app_name}",
            to_email=client.email,
            trainer_id=trainer.id,
            client_id=client.id,
            subject=f"Payment Reminder for {provider}",
            html=cta_email(
                body_heading="Payment Reminder",
                body_html=(
                    "<p>Hi there,</p>"
                    f"<p>Just a reminder that you have {overdue_label} due for {provider}. "
                    f'Click <a href="{link}">here</a> to review now.</p>'
                    f"<p>Best regards,<br> The {settings.app_name} Team</p>"
                ),
                receiving_reason=f"you have an overdue payment for {provider}",
                button_text="Review your outstanding payments",
                button_link=link,
                logo_url=trainer.business_logo_url,
                logo_alt=provider,
                brand_color=trainer.brand_color,
            ),
        )
        return True
