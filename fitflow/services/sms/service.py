"""`sendSms`: hand one queued text message to Twilio and record the outcome on the row."""

import httpx
from sqlalchemy import select

from fitflow.common.config import settings
from fitflow.common.db import utcnow
from fitflow.common.logging import logger
from fitflow.common.models import Client, Trainer
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import SendSmsPayload, TaskKind, UserNotifyPayload
from fitflow.services.sms.models import Sms, TwilioMessage
from fitflow.services.sms.twilio import TwilioClient, TwilioError


INVALID_NUMBER_SUFFIX = "is not a valid phone number."


class SmsNotConfigured(RuntimeError):
    pass


def status_callback_url() -> str:
    return f"{settings.base_url.rstrip('/')}/api/twilioStatusMessage"


class SmsService:
    def __init__(self, session_factory, twilio: TwilioClient | None = None) -> None:
        self.session_factory = session_factory
        self.twilio = twilio

    def handle_send_sms(self, payload: SendSmsPayload) -> None:
        with self.session_factory() as db:
            sms = db.execute(
                select(Sms)
                .where(Sms.id == payload.id, Sms.queued_at.is_(None), Sms.queue_failed_at.is_(None))
                .with_for_update()
            ).scalar_one_or_none()
            if sms is None:
                return
            if self.twilio is None or not (sms.from_number or self.twilio.messaging_service_sid):
                raise SmsNotConfigured("Twilio not configured")

            try:
                message = self.twilio.send_message(
                    sms.to_number, sms.body, status_callback_url(), from_number=sms.from_number
                )
            except httpx.TransportError as exc:
                self._mark_failed(sms, str(exc))
                db.commit()
                return
            except TwilioError as exc:
                if exc.message.endswith(INVALID_NUMBER_SUFFIX):
                    self._notify_invalid_number(db, sms)
                self._mark_failed(sms, exc.message)
                db.commit()
                return

            sid = message.get("sid")
            if sid:
                db.merge(TwilioMessage(sid=sid, object=message))
                sms.queued_at = utcnow()
                sms.twilio_message_sid = sid
            db.commit()
        logger.info("sms queued id=%s sid=%s", payload.id, sid)

    def _mark_failed(self, sms: Sms, reason: str) -> None:
        sms.queue_failed_at = utcnow()
        sms.queue_failed_reason = reason
        logger.warning("sms not queued id=%s reason=%s", sms.id, reason)

    def _notify_invalid_number(self, db, sms: Sms) -> None:
        if not sms.client_id or not sms.trainer_id:
            return
        client = db.get(Client, sms.client_id)
        trainer = db.get(Trainer, sms.trainer_id)
        if client is None or trainer is None or not client.full_name:
            return
        enqueue_task(
            db,
            TaskKind.USER_NOTIFY,
            UserNotifyPayload(
                user_id=trainer.user_id,
                title="Text reminder didn't send.",
                body=(
                    f"Sending a text reminder to {client.full_name} ({sms.to_number}) failed because "
                    "the number was invalid. Your credit has been refunded."
                ),
                client_id=client.id,
                message_type="failure",
                notification_type="general",
            ),
        )
