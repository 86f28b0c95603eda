"""Payment processor webhooks: stored on receipt, then applied by `processStripeEvent`.

Events can arrive out of order. Each one carries the full resource as of its
`created` time, so a resource is only overwritten by an event at least as new as
the newest one already received for that same resource.
"""

import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select

from fitflow.common.config import settings
from fitflow.common.db import utcnow
from fitflow.common.fees import from_smallest_unit
from fitflow.common.localization import format_local_money, format_short_date
from fitflow.common.logging import logger
from fitflow.common.models import Trainer
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import StripeEventPayload, TaskKind, UserNotifyPayload
from fitflow.services.billing.gateway import GatewayError, PaymentGateway
from fitflow.services.billing.models import (
    StripeAccount,
    StripeBalance,
    StripeEvent,
    StripePaymentIntent,
    StripeResource,
)
from fitflow.services.mail.service import queue_mail
from fitflow.services.mail.templates import cta_email


def base_event_type(event_type: str) -> str:
    """`payout.paid` -> `payout`, `charge.dispute.created` -> `charge.dispute`."""

    return re.sub(r"\.[a-z_]+$", "", event_type)


def record_stripe_event(db, event: dict[str, Any]) -> bool:
    """Store a verified webhook event and enqueue its processing in the caller's transaction.

    Returns False when the event id was already received; processor retries of a
    delivered webhook are expected.
    """

    if db.get(StripeEvent, event["id"]) is not None:
        return False
    resource = (event.get("data") or {}).get("object") or {}
    db.add(
        StripeEvent(
            id=event["id"],
            type=event["type"],
            resource_type=base_event_type(event["type"]),
            resource_id=resource.get("id"),
            account=event.get("account"),
            created=event["created"],
            object=event,
        )
    )
    enqueue_task(db, TaskKind.PROCESS_STRIPE_EVENT, StripeEventPayload(id=event["id"]))
    return True


class StripeEventService:
    def __init__(self, session_factory, gateway: PaymentGateway | None = None) -> None:
        self.session_factory = session_factory
        self.gateway = gateway

    @property
    def api_version(self) -> str:
        return settings.stripe_api_version.split(".")[0]

    def handle_process_stripe_event(self, payload: StripeEventPayload) -> None:
        with self.session_factory() as db:
            stored = db.execute(
                select(StripeEvent).where(StripeEvent.id == payload.id).with_for_update()
            ).scalar_one_or_none()
            if stored is None:
                logger.warning("stripe event not found id=%s", payload.id)
                return

            stored.processed_at = utcnow()
            event = stored.object
            resource = event["data"]["object"]
            if self._is_superseded(db, stored):
                logger.info("stale stripe event not saved id=%s type=%s", stored.id, stored.type)
            else:
                self._save_resource(db, stored, resource)

            account = event.get("account")
            if stored.type in ("payout.paid", "payout.created") and account:
                self._notify_payout(db, stored.type, account, resource)
            elif stored.type == "account.updated" and account and event["data"].get("previous_attributes"):
                self._notify_verification_change(db, account, resource, event["data"]["previous_attributes"])
            elif stored.type == "charge.dispute.created" and account:
                self._notify_dispute(db, account, resource)
            db.commit()
        logger.info("stripe event processed id=%s type=%s", payload.id, stored.type)

    def _is_superseded(self, db, stored: StripeEvent) -> bool:
        latest = db.execute(
            select(func.max(StripeEvent.created)).where(
                StripeEvent.resource_type == stored.resource_type,
                StripeEvent.resource_id == stored.resource_id,
                StripeEvent.account == stored.account,
            )
        ).scalar_one()
        return latest is not None and stored.created < latest

    def _save_resource(self, db, stored: StripeEvent, resource: dict[str, Any]) -> None:
        object_type = resource.get("object")
        if object_type == "balance":
            if stored.account:
                db.merge(StripeBalance(account_id=stored.account, object=resource, fetched_at=utcnow()))
            return
        resource_id = resource.get("id")
        if not resource_id or (object_type == "payout" and not stored.account):
            return

        if object_type == "payment_intent":
            db.merge(StripePaymentIntent(id=resource_id, api_version=self.api_version, object=resource))
        elif object_type == "account":
            account = db.get(StripeAccount, resource_id)
            if account is None:
                account = StripeAccount(id=resource_id, account_type=resource.get("type") or "standard")
                db.add(account)
            account.api_version = self.api_version
            account.object = resource
        else:
            db.merge(
                StripeResource(
                    id=resource_id,
                    object_type=object_type or stored.resource_type,
                    account=stored.account,
                    api_version=self.api_version,
                    object=resource,
                )
            )

    def _trainer_for_account(self, db, account: str) -> Trainer | None:
        return db.execute(select(Trainer).where(Trainer.stripe_account_id == account)).scalar_one_or_none()

    def _payout_destination(self, db, account: str, destination: str) -> tuple[str | None, str | None]:
        """Bank name and last four digits, from the stored resource or fetched once from the processor."""

        details: dict[str, Any] = {}
        stored = db.get(StripeResource, destination)
        if stored is not None and stored.object.get("account") == account:
            details = stored.object
        if (not details.get("bank_name") or not details.get("last4")) and self.gateway is not None:
            try:
                fetched = self.gateway.retrieve_external_account(account, destination)
            except GatewayError as exc:
                logger.warning("failed to refresh payout destination id=%s error=%s", destination, exc)
            else:
                db.merge(
                    StripeResource(
                        id=fetched["id"],
                        object_type=fetched.get("object") or "bank_account",
                        account=account,
                        api_version=self.api_version,
                        object=fetched,
                    )
                )
                details = fetched
        bank_name = details.get("bank_name") if details.get("object", "bank_account") == "bank_account" else None
        return bank_name, details.get("last4")

    def _notify_payout(self, db, event_type: str, account: str, payout: dict[str, Any]) -> None:
        destination = payout.get("destination")
        if payout.get("object") != "payout" or not isinstance(destination, str):
            return
        trainer = self._trainer_for_account(db, account)
        if trainer is None:
            return

        bank_name, last4 = self._payout_destination(db, account, destination)
        account_text = f" {bank_name} ···· {last4}" if bank_name and last4 else ""
        amount = format_local_money(
            from_smallest_unit(payout["amount"], payout["currency"]), payout["currency"], trainer.locale
        )
        if event_type == "payout.paid":
            title = f"Your {settings.app_name} payout has arrived!"
            body = f"{amount} has been transferred to your account{account_text}."
        else:
            arrival = format_short_date(
                datetime.fromtimestamp(payout["arrival_date"], tz=timezone.utc), trainer.locale, trainer.timezone
            )
            today = format_short_date(utcnow(), trainer.locale, trainer.timezone)
            when = "today" if arrival == today else f"on {arrival}"
            title = f"Your {settings.app_name} payout has been sent!"
            body = f"{amount} has been sent to your account{account_text}, it should arrive {when}."

        enqueue_task(
            db,
            TaskKind.USER_NOTIFY,
            UserNotifyPayload(
                user_id=trainer.user_id,
                title=title,
                body=body,
                message_type="success",
                notification_type="transaction",
            ),
        )

    def _notify_verification_change(
        self, db, account: str, resource: dict[str, Any], previous: dict[str, Any]
    ) -> None:
        """Tell the trainer when card payments become available, or when the processor needs more from them."""

        requirements = resource.get("requirements") or {}
        pending = requirements.get("pending_verification") or []
        past_due = requirements.get("past_due") or []
        previous_pending = (previous.get("requirements") or {}).get("pending_verification") or []
        removed_pending = [item for item in previous_pending if item not in pending]
        charges_enabled = resource.get("charges_enabled")
        charges_changed_to = charges_enabled if "charges_enabled" in previous else None
        payouts_changed_to = resource.get("payouts_enabled") if "payouts_enabled" in previous else None

        if (charges_changed_to or payouts_changed_to) and charges_enabled:
            subject = "You're all set to take payments"
            heading = "You're verified for payments"
            body_html = "Your details have been successfully verified. You can now take card payments."
            title, body, message_type = "You're verified for payments!", "You can now take card payments.", "success"
        elif (
            charges_changed_to is False
            or payouts_changed_to is False
            or any(item in past_due for item in removed_pending)
        ):
            subject = "Information required to enable payments and payouts"
            heading = "Information required to enable payments & payouts"
            body_html = (
                "More information is required to enable you to take card payments and receive payouts. "
                f"You can add the necessary information in the {settings.app_name} app. "
                "Sorry for messing with your flow!"
            )
            title = "Information required to enable payments & payouts!"
            body = "Add the required information directly in the app and we'll get you going in no time"
            message_type = "failure"
        else:
            return

        trainer = self._trainer_for_account(db, account)
        if trainer is None:
            return
        queue_mail(
            db,
            from_email=settings.app_email,
            from_name=f"{settings.app_name} Team",
            to_email=trainer.email,
            to_name=trainer.full_name,
            trainer_id=trainer.id,
            subject=subject,
            html=cta_email(
                body_heading=heading,
                body_html=body_html,
                receiving_reason=f"you're using {settings.app_name}",
                logo_url=settings.app_logo_url,
                logo_alt=settings.app_name,
            ),
        )
        enqueue_task(
            db,
            TaskKind.USER_NOTIFY,
            UserNotifyPayload(
                user_id=trainer.user_id,
                title=title,
                body=body,
                message_type=message_type,
                notification_type="general",
            ),
        )

    def _notify_dispute(self, db, account: str, dispute: dict[str, Any]) -> None:
        trainer = self._trainer_for_account(db, account)
        if trainer is None or dispute.get("object") != "dispute":
            return
        amount = format_local_money(
            from_smallest_unit(dispute["amount"], dispute["currency"]), dispute["currency"], trainer.locale
        )
        reason = (dispute.get("reason") or "general").replace("_", " ")
        enqueue_task(
            db,
            TaskKind.USER_NOTIFY,
            UserNotifyPayload(
                user_id=trainer.user_id,
                title="A client has disputed a payment",
                body=(
                    f"A chargeback of {amount} has been opened ({reason}). "
                    "Respond from your Stripe dashboard before the evidence deadline."
                ),
                message_type="failure",
                notification_type="transaction",
            ),
        )
