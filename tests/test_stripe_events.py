"""Payment processor webhook events: resource snapshots and trainer notifications."""

from datetime import datetime, timezone

from sqlalchemy import select

from fitflow.common.db import utcnow
from fitflow.common.tasks import StripeEventPayload, TaskKind, UserNotifyPayload
from fitflow.services.billing.events import StripeEventService, base_event_type, record_stripe_event
from fitflow.services.billing.gateway import GatewayError
from fitflow.services.billing.models import (
    StripeAccount,
    StripeBalance,
    StripeEvent,
    StripePaymentIntent,
    StripeResource,
)
from fitflow.services.mail.models import Mail


def _record(session_factory, event_id, event_type, obj, created=1_700_000_000, account="acct_1", previous=None):
    data = {"object": obj}
    if previous is not None:
        data["previous_attributes"] = previous
    event = {"id": event_id, "type": event_type, "created": created, "data": data}
    if account:
        event["account"] = account
    with session_factory() as db:
        record_stripe_event(db, event)
        db.commit()
    return event_id


def _process(session_factory, event_id, gateway=None):
    StripeEventService(session_factory, gateway).handle_process_stripe_event(StripeEventPayload(id=event_id))


def _notifications(tasks):
    return [UserNotifyPayload.model_validate(task.payload) for task in tasks(TaskKind.USER_NOTIFY.value)]


def _payout(**overrides):
    payout = {
        "id": "po_1",
        "object": "payout",
        "amount": 12345,
        "currency": "usd",
        "destination": "ba_1",
        "arrival_date": int(datetime(2030, 1, 15, 12, tzinfo=timezone.utc).timestamp()),
    }
    payout.update(overrides)
    return payout


def _store_bank(session_factory, account="acct_1"):
    with session_factory() as db:
        db.add(
            StripeResource(
                id="ba_1",
                object_type="bank_account",
                account=account,
                object={
                    "id": "ba_1",
                    "object": "bank_account",
                    "account": account,
                    "bank_name": "STRIPE TEST BANK",
                    "last4": "6789",
                },
            )
        )
        db.commit()


def test_base_event_type_drops_the_last_segment():
    assert base_event_type("payout.paid") == "payout"
    assert base_event_type("charge.dispute.created") == "charge.dispute"
    assert base_event_type("payment_intent.payment_failed") == "payment_intent"


def test_event_is_recorded_once(session_factory, tasks):
    _record(session_factory, "evt_1", "payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})
    with session_factory() as db:
        again = record_stripe_event(
            db, {"id": "evt_1", "type": "payment_intent.succeeded", "created": 1, "data": {"object": {}}}
        )
        db.commit()

    assert again is False
    [task] = tasks(TaskKind.PROCESS_STRIPE_EVENT.value)
    assert task.payload == {"id": "evt_1"}
    with session_factory() as db:
        stored = db.get(StripeEvent, "evt_1")
        assert stored.resource_type == "payment_intent"
        assert stored.resource_id == "pi_1"


def test_processing_saves_the_resource_and_marks_the_event(session_factory):
    intent = {"id": "pi_1", "object": "payment_intent", "status": "succeeded"}
    _record(session_factory, "evt_1", "payment_intent.succeeded", intent)

    _process(session_factory, "evt_1")

    with session_factory() as db:
        assert db.get(StripePaymentIntent, "pi_1").object == intent
        assert db.get(StripeEvent, "evt_1").processed_at is not None


def test_older_event_does_not_overwrite_newer_snapshot(session_factory):
    newer = {"id": "pi_1", "object": "payment_intent", "status": "succeeded"}
    older = {"id": "pi_1", "object": "payment_intent", "status": "processing"}
    _record(session_factory, "evt_new", "payment_intent.succeeded", newer, created=200)
    _record(session_factory, "evt_old", "payment_intent.processing", older, created=100)

    _process(session_factory, "evt_new")
    _process(session_factory, "evt_old")

    with session_factory() as db:
        assert db.get(StripePaymentIntent, "pi_1").object["status"] == "succeeded"
        assert db.get(StripeEvent, "evt_old").processed_at is not None


def test_older_event_for_another_resource_is_still_saved(session_factory):
    _record(session_factory, "evt_1", "payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"}, 200)
    _record(session_factory, "evt_2", "payment_intent.succeeded", {"id": "pi_2", "object": "payment_intent"}, 100)

    _process(session_factory, "evt_2")

    with session_factory() as db:
        assert db.get(StripePaymentIntent, "pi_2") is not None


def test_balance_is_kept_per_account(session_factory):
    balance = {"object": "balance", "available": [{"amount": 500, "currency": "usd"}]}
    _record(session_factory, "evt_1", "balance.available", balance)

    _process(session_factory, "evt_1")

    with session_factory() as db:
        assert db.get(StripeBalance, "acct_1").object == balance


def test_account_snapshot_replaces_stored_account(session_factory, trainer):
    account = {"id": "acct_1", "object": "account", "type": "standard", "charges_enabled": True}
    _record(session_factory, "evt_1", "account.updated", account, previous={"metadata": {}})

    _process(session_factory, "evt_1")

    with session_factory() as db:
        assert db.get(StripeAccount, "acct_1").object == account


def test_payout_without_connected_account_is_not_saved(session_factory):
    _record(session_factory, "evt_1", "payout.paid", _payout(), account=None)

    _process(session_factory, "evt_1")

    with session_factory() as db:
        assert db.get(StripeResource, "po_1") is None


def test_paid_payout_notifies_trainer_with_stored_bank(session_factory, trainer, gateway, tasks):
    _store_bank(session_factory)
    _record(session_factory, "evt_1", "payout.paid", _payout())

    _process(session_factory, "evt_1", gateway)

    [notification] = _notifications(tasks)
    assert notification.user_id == trainer.user_id
    assert notification.title == "Your FitFlow payout has arrived!"
    assert notification.body == "$123.45 has been transferred to your account STRIPE TEST BANK ···· 6789."
    assert notification.message_type == "success"
    assert gateway.external_account_requests == []
    with session_factory() as db:
        assert db.get(StripeResource, "po_1").object_type == "payout"


def test_sent_payout_names_the_arrival_date(session_factory, trainer, gateway, tasks):
    _store_bank(session_factory)
    _record(session_factory, "evt_1", "payout.created", _payout())

    _process(session_factory, "evt_1", gateway)

    [notification] = _notifications(tasks)
    assert notification.title == "Your FitFlow payout has been sent!"
    assert notification.body == (
        "$123.45 has been sent to your account STRIPE TEST BANK ···· 6789, it should arrive on Jan 15, 2030."
    )


def test_sent_payout_arriving_today(session_factory, trainer, gateway, tasks):
    _store_bank(session_factory)
    _record(session_factory, "evt_1", "payout.created", _payout(arrival_date=int(utcnow().timestamp())))

    _process(session_factory, "evt_1", gateway)

    [notification] = _notifications(tasks)
    assert notification.body.endswith("it should arrive today.")


def test_unknown_bank_is_fetched_and_stored(session_factory, trainer, gateway, tasks):
    gateway.external_accounts["ba_1"] = {
        "id": "ba_1",
        "object": "bank_account",
        "account": "acct_1",
        "bank_name": "FIRST BANK",
        "last4": "4321",
    }
    _record(session_factory, "evt_1", "payout.paid", _payout())

    _process(session_factory, "evt_1", gateway)

    assert gateway.external_account_requests == [("acct_1", "ba_1")]
    [notification] = _notifications(tasks)
    assert notification.body.endswith("your account FIRST BANK ···· 4321.")
    with session_factory() as db:
        assert db.get(StripeResource, "ba_1").object["last4"] == "4321"


def test_bank_lookup_failure_still_notifies(session_factory, trainer, gateway, tasks):
    gateway.external_account_error = GatewayError("down", transient=True)
    _record(session_factory, "evt_1", "payout.paid", _payout())

    _process(session_factory, "evt_1", gateway)

    [notification] = _notifications(tasks)
    assert notification.body == "$123.45 has been transferred to your account."


def test_verified_account_gets_mail_and_notification(session_factory, trainer, tasks):
    account = {"id": "acct_1", "object": "account", "charges_enabled": True, "payouts_enabled": True}
    _record(session_factory, "evt_1", "account.updated", account, previous={"charges_enabled": False})

    _process(session_factory, "evt_1")

    with session_factory() as db:
        mail = db.execute(select(Mail)).scalar_one()
    assert mail.subject == "You're all set to take payments"
    assert mail.from_email == "team@fitflow.app"
    assert mail.from_name == "FitFlow Team"
    assert mail.to_email == "coach@example.com"
    assert mail.to_name == "Sam Coach"
    assert "successfully verified. You can now take card payments." in mail.html
    [notification] = _notifications(tasks)
    assert notification.title == "You're verified for payments!"
    assert notification.message_type == "success"
    assert notification.notification_type == "general"


def test_disabled_payouts_ask_for_more_information(session_factory, trainer, tasks):
    account = {"id": "acct_1", "object": "account", "charges_enabled": True, "payouts_enabled": False}
    _record(session_factory, "evt_1", "account.updated", account, previous={"payouts_enabled": True})

    _process(session_factory, "evt_1")

    with session_factory() as db:
        mail = db.execute(select(Mail)).scalar_one()
    assert mail.subject == "Information required to enable payments and payouts"
    assert "in the FitFlow app" in mail.html
    [notification] = _notifications(tasks)
    assert notification.title == "Information required to enable payments & payouts!"
    assert notification.message_type == "failure"


def test_verification_moved_to_past_due_asks_for_more_information(session_factory, trainer, tasks):
    account = {
        "id": "acct_1",
        "object": "account",
        "charges_enabled": True,
        "requirements": {"pending_verification": [], "past_due": ["individual.verification.document"]},
    }
    previous = {"requirements": {"pending_verification": ["individual.verification.document"]}}
    _record(session_factory, "evt_1", "account.updated", account, previous=previous)

    _process(session_factory, "evt_1")

    [notification] = _notifications(tasks)
    assert notification.message_type == "failure"


def test_unrelated_account_change_is_silent(session_factory, trainer, tasks):
    account = {"id": "acct_1", "object": "account", "charges_enabled": True, "email": "new@example.com"}
    _record(session_factory, "evt_1", "account.updated", account, previous={"email": "old@example.com"})

    _process(session_factory, "evt_1")

    assert tasks(TaskKind.USER_NOTIFY.value) == []
    assert tasks(TaskKind.SEND_MAIL.value) == []


def test_dispute_notifies_trainer(session_factory, trainer, tasks):
    dispute = {"id": "dp_1", "object": "dispute", "amount": 5000, "currency": "usd", "reason": "product_not_received"}
    _record(session_factory, "evt_1", "charge.dispute.created", dispute)

    _process(session_factory, "evt_1")

    [notification] = _notifications(tasks)
    assert notification.title == "A client has disputed a payment"
    assert "$50.00" in notification.body
    assert "(product not received)" in notification.body
    assert notification.notification_type == "transaction"


def test_missing_event_is_ignored(session_factory, tasks):
    _process(session_factory, "evt_missing")

    assert tasks() == []
