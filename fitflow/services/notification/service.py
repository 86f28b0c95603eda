"""Push delivery for `user.notify` tasks."""

from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select

from fitflow.common.db import utcnow
from fitflow.common.logging import logger
from fitflow.common.metrics import push_failures_total
from fitflow.common.models import Trainer
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import TaskKind, UserNotifyPayload
from fitflow.services.notification.apns import PushFailure, PushSender
from fitflow.services.notification.models import AppNotification, Installation


UNREGISTERED_REASONS = frozenset({"Unregistered", "DeviceTokenNotForTopic", "BadDeviceToken"})
PUSH_RETRY_DELAY = timedelta(minutes=1)


def is_unregistered(failure: PushFailure) -> bool:
    return failure.reason in UNREGISTERED_REASONS


def is_server_failure(failure: PushFailure) -> bool:
    if failure.connection_lost or failure.error == "stream ended unexpectedly":
        return True
    return failure.status is not None and failure.status >= 500


def build_push_payload(payload: UserNotifyPayload, app_notification_id: str | None) -> dict[str, Any]:
    """APNs body; the model id/name point at the first referenced entity."""

    model_id, model_name = None, None
    for value, name in (
        (payload.payment_id, "payment"),
        (payload.payment_plan_id, "paymentPlan"),
        (payload.payment_plan_payment_id, "paymentPlanPayment"),
        (payload.session_pack_id, "sessionPackId"),
    ):
        if value:
            model_id, model_name = value, name
            break

    aps: dict[str, Any] = {
        "alert": {"title": payload.title, "body": payload.body},
        "category": payload.notification_type,
        "userId": payload.user_id,
        "messageType": payload.message_type,
        "notificationType": payload.notification_type,
        "appNotificationId": app_notification_id,
    }
    if payload.client_id:
        aps["clientId"] = payload.client_id
    if model_id:
        aps["modelId"] = model_id
        aps["modelName"] = model_name
    return {"aps": aps}


def register_installation(db, user_id: str, device_token: str) -> bool:
    """Record a device for a user; False when it was already registered."""

    existing = db.execute(
        select(Installation.id).where(Installation.user_id == user_id, Installation.device_token == device_token)
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.add(Installation(user_id=user_id, device_token=device_token))
    return True


class NotificationService:
    """Writes the in-app notification and pushes to the user's devices."""

    def __init__(self, session_factory, push: PushSender | None = None) -> None:
        self.session_factory = session_factory
        self.push = push

    def handle_user_notify(self, payload: UserNotifyPayload) -> None:
        with self.session_factory() as db:
            devices = payload.device_tokens or list(
                db.execute(select(Installation.device_token).where(Installation.user_id == payload.user_id))
                .scalars()
                .all()
            )

            app_notification_id = None
            if not payload.skip_app_notification:
                app_notification_id = self._add_app_notification(db, payload)

            if not devices or self.push is None:
                db.commit()
                return

            result = self.push.send(build_push_payload(payload, app_notification_id), devices)
            self._apply_push_result(db, payload, result.failed)
            db.commit()
        logger.info(
            "push sent user_id=%s devices=%s failed=%s", payload.user_id, len(devices), len(result.failed)
        )

    def _add_app_notification(self, db, payload: UserNotifyPayload) -> str | None:
        # Only trainers have an in-app notification feed.
        trainer_id = db.execute(select(Trainer.id).where(Trainer.user_id == payload.user_id)).scalar_one_or_none()
        if trainer_id is None:
            return None
        notification = AppNotification(
            trainer_id=trainer_id,
            user_id=payload.user_id,
            user_type="trainer",
            client_id=payload.client_id,
            payment_plan_id=payload.payment_plan_id,
            payment_id=payload.payment_id,
            payment_plan_payment_id=payload.payment_plan_payment_id,
            session_pack_id=payload.session_pack_id,
            body=payload.body,
            message_type=payload.message_type,
            notification_type=payload.notification_type,
        )
        db.add(notification)
        db.flush()
        return notification.id

    def _apply_push_result(self, db, payload: UserNotifyPayload, failures: list[PushFailure]) -> None:
        unregistered = [failure.device for failure in failures if is_unregistered(failure)]
        retryable = [failure.device for failure in failures if not is_unregistered(failure) and is_server_failure(failure)]
        dropped = [failure for failure in failures if not is_unregistered(failure) and not is_server_failure(failure)]

        if unregistered:
            db.execute(
                delete(Installation).where(
                    Installation.user_id == payload.user_id,
                    Installation.device_token.in_(unregistered),
                )
            )
            push_failures_total.labels(disposition="unregistered").inc(len(unregistered))
            logger.info("removed unregistered devices user_id=%s count=%s", payload.user_id, len(unregistered))

        if retryable:
            # The in-app notification was already written by this attempt.
            enqueue_task(
                db,
                TaskKind.USER_NOTIFY,
                payload.model_copy(update={"device_tokens": retryable, "skip_app_notification": True}),
                available_at=utcnow() + PUSH_RETRY_DELAY,
            )
            push_failures_total.labels(disposition="retried").inc(len(retryable))

        for failure in dropped:
            push_failures_total.labels(disposition="dropped").inc()
            logger.warning(
                "push failed device=%s status=%s reason=%s error=%s",
                failure.device,
                failure.status,
                failure.reason,
                failure.error,
            )
