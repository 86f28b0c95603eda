"""Mail delivery, provider webhook ingestion, and the trainer mailing list."""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update

from fitflow.common.config import settings
from fitflow.common.db import utcnow
from fitflow.common.logging import logger
from fitflow.common.models import Trainer
from fitflow.common.outbox import enqueue_task
from fitflow.common.schedules import rescheduling
from fitflow.common.tasks import (
    MailingListTag,
    MandrillEventPayload,
    RefreshUserPropertiesPayload,
    ScheduledTaskPayload,
    SendMailPayload,
    TaskKind,
    TrainerPayload,
    UpdateListMemberTagsPayload,
)
from fitflow.services.mail.mailchimp import MailchimpClient, MailchimpError, MailchimpMemberNotFound
from fitflow.services.mail.mandrill import MandrillClient, MandrillError
from fitflow.services.mail.models import Mail, MailBounce, MailClick, MailOpen, MandrillEvent


TRIALLED_DIDNT_SUB_TAG = "Trialled didn't sub"

# Mailchimp refuses these addresses on subscribe; retrying cannot change the answer.
SUBSCRIBE_IGNORED_DETAILS = ("looks fake or invalid", "is already a list member")


def queue_mail(
    db,
    *,
    to_email: str,
    subject: str,
    html: str,
    from_name: str | None = None,
    from_email: str | None = None,
    to_name: str | None = None,
    reply_to: str | None = None,
    trainer_id: str | None = None,
    client_id: str | None = None,
) -> str:
    """Insert a mail row and its `sendMail` task in the caller's transaction."""

    mail = Mail(
        id=str(uuid4()),
        from_email=from_email or settings.no_reply_email,
        from_name=from_name,
        to_email=to_email,
        to_name=to_name,
        reply_to=reply_to,
        subject=subject,
        html=html,
        trainer_id=trainer_id,
        client_id=client_id,
    )
    db.add(mail)
    enqueue_task(db, TaskKind.SEND_MAIL, SendMailPayload(id=mail.id))
    return mail.id


def record_mandrill_event(db, event: dict[str, Any]) -> bool:
    """Store one webhook event and enqueue its processing task.

    Returns False for an event that was already recorded.
    """

    payload = MandrillEventPayload.model_validate(event)
    existing = db.get(MandrillEvent, (payload.ts, payload.message_id, payload.event))
    if existing is not None:
        return False
    db.add(MandrillEvent(ts=payload.ts, message_id=payload.message_id, event=payload.event, object=event))
    enqueue_task(db, TaskKind.PROCESS_MANDRILL_EVENT, payload)
    return True


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


class MailService:
    """Handlers for mail delivery, Mandrill webhooks and the Mailchimp audience."""

    def __init__(
        self,
        session_factory,
        mandrill: MandrillClient | None = None,
        mailchimp: MailchimpClient | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.mandrill = mandrill
        self.mailchimp = mailchimp

    def _mark_rejected(self, mail_id: str, reason: str) -> None:
        with self.session_factory() as db:
            db.execute(update(Mail).where(Mail.id == mail_id).values(rejected_at=utcnow(), reject_reason=reason))
            db.commit()

    def handle_send_mail(self, payload: SendMailPayload) -> None:
        """Deliver a queued mail once; anything already handed to the provider is skipped."""

        with self.session_factory() as db:
            mail = db.execute(
                select(Mail).where(
                    Mail.id == payload.id,
                    Mail.mandrill_message_id.is_(None),
                    Mail.queued_at.is_(None),
                    Mail.rejected_at.is_(None),
                    Mail.sent_at.is_(None),
                )
            ).scalar_one_or_none()
        if mail is None:
            return

        if self.mandrill is None:
            logger.warning("mail provider not configured mail_id=%s", mail.id)
            self._mark_rejected(mail.id, "Mail provider is not configured")
            return

        message: dict[str, Any] = {
            "from_email": mail.from_email,
            "to": [{"email": mail.to_email, **({"name": mail.to_name} if mail.to_name else {})}],
            "subject": mail.subject,
            "html": mail.html,
            "metadata": {"mailId": mail.id},
        }
        if mail.from_name:
            message["from_name"] = mail.from_name
        if mail.reply_to:
            message["headers"] = {"Reply-To": mail.reply_to}

        try:
            result = self.mandrill.send_message(message)
        except MandrillError as exc:
            if exc.transient:
                raise
            logger.warning("mail rejected mail_id=%s error=%s", mail.id, exc)
            self._mark_rejected(mail.id, str(exc))
            return

        now = utcnow()
        with self.session_factory() as db:
            db.execute(
                update(Mail)
                .where(Mail.id == mail.id)
                .values(
                    queued_at=now,
                    sent_at=now if result.status == "sent" else None,
                    rejected_at=now if result.status in ("rejected", "invalid") else None,
                    reject_reason=result.reject_reason,
                    mandrill_message_id=result.message_id,
                )
            )
            db.commit()
        logger.info("mail handed to provider mail_id=%s status=%s", mail.id, result.status)

    def handle_process_mandrill_event(self, payload: MandrillEventPayload) -> None:
        """Mark the stored event processed and apply it to the mail it refers to."""

        event_time = datetime.fromtimestamp(payload.ts, tz=timezone.utc)
        with self.session_factory() as db:
            stored = db.get(MandrillEvent, (payload.ts, payload.message_id, payload.event))
            if stored is not None:
                stored.processed_at = utcnow()

            if payload.event == "send":
                db.execute(
                    update(Mail).where(Mail.mandrill_message_id == payload.message_id).values(sent_at=event_time)
                )
            elif payload.event == "reject":
                db.execute(
                    update(Mail).where(Mail.mandrill_message_id == payload.message_id).values(rejected_at=event_time)
                )
            elif payload.event in ("open", "click", "hard_bounce", "soft_bounce"):
                mail_id = db.execute(
                    select(Mail.id).where(Mail.mandrill_message_id == payload.message_id)
                ).scalars().first()
                if stored is not None and mail_id is not None:
                    self._record_engagement(db, payload.event, mail_id, event_time, stored.object or {})
            db.commit()

    def _record_engagement(self, db, event: str, mail_id: str, event_time: datetime, data: dict) -> None:
        if event == "open":
            db.add(
                MailOpen(
                    mail_id=mail_id,
                    opened_at=event_time,
                    ip=_str_or_none(data.get("ip")),
                    user_agent=_str_or_none(data.get("user_agent")),
                    location=data.get("location"),
                )
            )
        elif event == "click":
            db.add(
                MailClick(
                    mail_id=mail_id,
                    clicked_at=event_time,
                    ip=_str_or_none(data.get("ip")),
                    user_agent=_str_or_none(data.get("user_agent")),
                    url=_str_or_none(data.get("url")),
                    location=data.get("location"),
                )
            )
        else:
            msg = data.get("msg") if isinstance(data.get("msg"), dict) else {}
            db.add(
                MailBounce(
                    mail_id=mail_id,
                    bounced_at=event_time,
                    bounce_type="hard" if event == "hard_bounce" else "soft",
                    diagnosis=_str_or_none(msg.get("diag")),
                    description=_str_or_none(msg.get("bounce_description")),
                )
            )

    def handle_update_list_member_tags(self, payload: UpdateListMemberTagsPayload) -> None:
        if self.mailchimp is None:
            logger.debug("mailing list not configured trainer_id=%s", payload.trainer_id)
            return

        with self.session_factory() as db:
            email = db.execute(select(Trainer.email).where(Trainer.id == payload.trainer_id)).scalar_one_or_none()
        if not email:
            return

        tags = [tag.model_dump() for tag in payload.tags]
        try:
            self.mailchimp.update_list_member_tags(email, tags)
        except MailchimpMemberNotFound:
            logger.info("mailing list member not found for tag update trainer_id=%s", payload.trainer_id)

    def _trainer_names(self, trainer_id: str):
        with self.session_factory() as db:
            return db.execute(
                select(Trainer.email, Trainer.first_name, Trainer.last_name).where(Trainer.id == trainer_id)
            ).one_or_none()

    def handle_mailchimp_subscribe(self, payload: TrainerPayload) -> None:
        """Add a newly signed-up trainer to the audience."""

        if self.mailchimp is None:
            logger.debug("mailing list not configured trainer_id=%s", payload.trainer_id)
            return
        trainer = self._trainer_names(payload.trainer_id)
        if trainer is None:
            return

        try:
            self.mailchimp.add_list_member(trainer.email, trainer.first_name, trainer.last_name)
        except MailchimpError as exc:
            if any(text in exc.detail for text in SUBSCRIBE_IGNORED_DETAILS):
                logger.debug("mailing list subscribe skipped trainer_id=%s detail=%s", payload.trainer_id, exc.detail)
                return
            raise

    def handle_mailchimp_refresh_user_properties(self, payload: RefreshUserPropertiesPayload) -> None:
        if self.mailchimp is None:
            logger.debug("mailing list not configured trainer_id=%s", payload.trainer_id)
            return
        trainer = self._trainer_names(payload.trainer_id)
        if trainer is None:
            return

        try:
            self.mailchimp.update_list_member(payload.email, trainer.first_name, trainer.last_name)
        except MailchimpMemberNotFound:
            logger.info("mailing list member not found for refresh trainer_id=%s", payload.trainer_id)

    def handle_tag_trialled_didnt_sub(self, payload: ScheduledTaskPayload) -> None:
        """Half-hourly: tag every trainer whose trial lapsed without subscribing, once per trainer."""

        with rescheduling(self.session_factory, TaskKind.TAG_TRIALLED_DIDNT_SUB, payload.scheduled_at):
            with self.session_factory() as db:
                trainer_ids = (
                    db.execute(
                        update(Trainer)
                        .where(
                            Trainer.subscription_status == "limited",
                            Trainer.trialled_didnt_sub_mailchimp_tag_applied.is_(False),
                        )
                        .values(trialled_didnt_sub_mailchimp_tag_applied=True)
                        .returning(Trainer.id)
                    )
                    .scalars()
                    .all()
                )
                for trainer_id in trainer_ids:
                    enqueue_task(
                        db,
                        TaskKind.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS,
                        UpdateListMemberTagsPayload(
                            trainer_id=trainer_id,
                            tags=[MailingListTag(name=TRIALLED_DIDNT_SUB_TAG, status="active")],
                        ),
                    )
                db.commit()
            logger.info("trialled-without-subscribing tags queued trainers=%s", len(trainer_ids))
