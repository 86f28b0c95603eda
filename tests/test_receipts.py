"""App Store receipt verification, storage and the periodic refresh."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from fitflow.common.db import as_utc, utcnow
from fitflow.common.tasks import ScheduledTaskPayload, TaskKind
from fitflow.services.appstore.models import AppStorePendingRenewalInfo, AppStoreTransaction
from fitflow.services.appstore.receipts import (
    AUTO_RENEW_OFF_TAG,
    AppStoreReceiptError,
    ReceiptErrorKind,
    ReceiptVerifier,
    classify_status,
    process_apple_receipt,
)
from fitflow.services.appstore.service import AppStoreNotConfigured, AppStoreService


def _millis(value: datetime) -> str:
    return str(int(value.timestamp() * 1000))


def _item(transaction_id, purchased, original="orig-1", product="pro.monthly"):
    return {
        "transaction_id": transaction_id,
        "original_transaction_id": original,
        "product_id": product,
        "purchase_date_ms": _millis(purchased),
        "expires_date_ms": _millis(purchased + timedelta(days=30)),
        "web_order_line_item_id": f"woli-{transaction_id}",
        "is_trial_period": "false",
        "is_in_intro_offer_period": "false",
    }


def _receipt(items, auto_renew="1", latest_receipt="LATEST"):
    return {
        "status": 0,
        "environment": "Production",
        "latest_receipt": latest_receipt,
        "latest_receipt_info": items,
        "pending_renewal_info": [
            {"product_id": "pro.monthly", "original_transaction_id": "orig-1", "auto_renew_status": auto_renew}
        ],
    }


def _verifier(handler):
    return ReceiptVerifier(transport=httpx.MockTransport(handler))


def _respond(payload):
    return _verifier(lambda request: httpx.Response(200, json=payload))


def test_verified_receipt_is_stored(session_factory):
    now = utcnow().replace(microsecond=0)
    items = [_item("tx-2", now - timedelta(days=1)), _item("tx-1", now - timedelta(days=31))]

    verified = process_apple_receipt(session_factory, _respond(_receipt(items)), "trainer-1", "RECEIPT", "secret")

    assert verified.latest_receipt == "LATEST"
    with session_factory() as db:
        rows = {row.transaction_id: row for row in db.execute(select(AppStoreTransaction)).scalars()}
        renewal = db.get(AppStorePendingRenewalInfo, ("trainer-1", "pro.monthly"))
    assert set(rows) == {"tx-1", "tx-2"}
    assert rows["tx-2"].trainer_id == "trainer-1"
    assert as_utc(rows["tx-2"].purchase_date) == now - timedelta(days=1)
    assert rows["tx-2"].is_trial_period is False
    assert rows["tx-2"].encoded_receipt == "LATEST"
    assert renewal.data["auto_renew_status"] == "1"


def test_auto_renew_off_tags_mailing_list_member(session_factory, tasks):
    items = [_item("tx-1", utcnow() - timedelta(days=1))]

    process_apple_receipt(session_factory, _respond(_receipt(items, auto_renew="0")), "trainer-1", "RECEIPT", "secret")

    [tag_task] = tasks(TaskKind.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS.value)
    assert tag_task.payload == {
        "trainerId": "trainer-1",
        "tags": [{"name": AUTO_RENEW_OFF_TAG, "status": "active"}],
    }


def test_sandbox_receipt_is_retried_against_sandbox(session_factory):
    hosts = []
    items = [_item("tx-1", utcnow() - timedelta(days=1))]

    def handler(request):
        hosts.append(request.url.host)
        assert json.loads(request.content)["receipt-data"] == "RECEIPT"
        if request.url.host == "buy.itunes.apple.com":
            return httpx.Response(200, json={"status": 21007})
        return httpx.Response(200, json=_receipt(items))

    process_apple_receipt(session_factory, _verifier(handler), "trainer-1", "RECEIPT", "secret")

    assert hosts == ["buy.itunes.apple.com", "sandbox.itunes.apple.com"]


@pytest.mark.parametrize(
    ("status", "is_retryable", "kind"),
    [
        (21002, False, ReceiptErrorKind.INVALID_PARAMETERS),
        (21003, False, ReceiptErrorKind.UNEXPECTED),
        (21005, False, ReceiptErrorKind.TEMPORARY),
        (21010, False, ReceiptErrorKind.UNEXPECTED),
        (21150, True, ReceiptErrorKind.TEMPORARY),
        (21150, False, ReceiptErrorKind.UNEXPECTED),
        (30000, False, ReceiptErrorKind.UNEXPECTED),
    ],
)
def test_status_codes_map_to_error_kinds(status, is_retryable, kind):
    assert classify_status(status, is_retryable).kind == kind


def test_success_status_is_not_an_error():
    assert classify_status(0) is None


def test_retryable_flag_is_read_from_response(session_factory):
    with pytest.raises(AppStoreReceiptError) as excinfo:
        process_apple_receipt(
            session_factory, _respond({"status": 21100, "is-retryable": True}), "trainer-1", "RECEIPT", "secret"
        )
    assert excinfo.value.kind == ReceiptErrorKind.TEMPORARY


def test_http_failure_is_temporary(session_factory):
    with pytest.raises(AppStoreReceiptError) as excinfo:
        process_apple_receipt(
            session_factory, _verifier(lambda request: httpx.Response(503)), "trainer-1", "RECEIPT", "secret"
        )
    assert excinfo.value.kind == ReceiptErrorKind.TEMPORARY


def test_network_failure_is_temporary(session_factory):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AppStoreReceiptError) as excinfo:
        process_apple_receipt(session_factory, _verifier(handler), "trainer-1", "RECEIPT", "secret")
    assert excinfo.value.kind == ReceiptErrorKind.TEMPORARY


def test_response_without_status_is_unexpected(session_factory):
    with pytest.raises(AppStoreReceiptError) as excinfo:
        process_apple_receipt(session_factory, _respond({"receipt": {}}), "trainer-1", "RECEIPT", "secret")
    assert excinfo.value.kind == ReceiptErrorKind.UNEXPECTED


def test_transaction_owned_by_another_trainer_is_a_conflict(session_factory):
    """The existing owner's row is left untouched."""

    purchased = utcnow() - timedelta(days=1)
    process_apple_receipt(
        session_factory, _respond(_receipt([_item("tx-1", purchased)], latest_receipt="A")), "trainer-a", "R", "s"
    )

    with pytest.raises(AppStoreReceiptError) as excinfo:
        process_apple_receipt(
            session_factory, _respond(_receipt([_item("tx-1", purchased)], latest_receipt="B")), "trainer-b", "R", "s"
        )

    assert excinfo.value.kind == ReceiptErrorKind.USER_CONFLICT
    with session_factory() as db:
        row = db.get(AppStoreTransaction, "tx-1")
        assert row.trainer_id == "trainer-a"
        assert row.encoded_receipt == "A"
        assert db.get(AppStorePendingRenewalInfo, ("trainer-b", "pro.monthly")) is None


def test_reverifying_updates_existing_transactions(session_factory):
    purchased = utcnow() - timedelta(days=1)
    process_apple_receipt(session_factory, _respond(_receipt([_item("tx-1", purchased)])), "trainer-1", "R", "s")
    renewed = _item("tx-1", purchased)
    renewed["is_in_intro_offer_period"] = "true"
    process_apple_receipt(
        session_factory, _respond(_receipt([renewed], latest_receipt="NEWER")), "trainer-1", "R", "s"
    )

    with session_factory() as db:
        row = db.get(AppStoreTransaction, "tx-1")
    assert row.is_in_intro_offer_period is True
    assert row.encoded_receipt == "NEWER"


def _store(session_factory, trainer_id, transaction_id, expires, original, receipt):
    with session_factory() as db:
        db.add(
            AppStoreTransaction(
                transaction_id=transaction_id,
                trainer_id=trainer_id,
                original_transaction_id=original,
                product_id="pro.monthly",
                purchase_date=expires - timedelta(days=30),
                expires_date=expires,
                web_order_line_item_id=f"woli-{transaction_id}",
                is_trial_period=False,
                is_in_intro_offer_period=False,
                encoded_receipt=receipt,
            )
        )
        db.commit()


def test_latest_receipts_pick_newest_recent_transaction(session_factory):
    now = utcnow()
    _store(session_factory, "trainer-1", "tx-old", now - timedelta(days=20), "orig-1", "OLD")
    _store(session_factory, "trainer-1", "tx-new", now + timedelta(days=10), "orig-1", "NEW")
    _store(session_factory, "trainer-2", "tx-lapsed", now - timedelta(days=90), "orig-2", "LAPSED")

    service = AppStoreService(session_factory, _respond({}), "secret")
    with session_factory() as db:
        assert service.latest_receipts(db) == [("trainer-1", "NEW")]


def test_refresh_continues_past_failed_receipts(session_factory, tasks):
    now = utcnow()
    _store(session_factory, "trainer-a", "tx-a", now + timedelta(days=5), "orig-a", "RECEIPT-A")
    _store(session_factory, "trainer-b", "tx-b", now + timedelta(days=5), "orig-b", "RECEIPT-B")
    refreshed = _item("tx-b", now, original="orig-b")

    def handler(request):
        if json.loads(request.content)["receipt-data"] == "RECEIPT-A":
            return httpx.Response(200, json={"status": 21005})
        return httpx.Response(200, json=_receipt([refreshed], latest_receipt="RECEIPT-B2"))

    scheduled_at = datetime(2026, 3, 10, 0, 30, tzinfo=timezone.utc)
    AppStoreService(session_factory, _verifier(handler), "secret").handle_refresh_app_store_receipts(
        ScheduledTaskPayload(scheduled_at=scheduled_at)
    )

    with session_factory() as db:
        assert db.get(AppStoreTransaction, "tx-b").encoded_receipt == "RECEIPT-B2"
        assert db.get(AppStoreTransaction, "tx-a").encoded_receipt == "RECEIPT-A"
    [next_run] = tasks(TaskKind.REFRESH_APP_STORE_RECEIPTS.value)
    assert as_utc(next_run.available_at) == datetime(2026, 3, 10, 12, 30, tzinfo=timezone.utc)


def test_refresh_without_shared_secret_fails_but_reschedules(session_factory, tasks):
    with pytest.raises(AppStoreNotConfigured):
        AppStoreService(session_factory, _respond({}), None).handle_refresh_app_store_receipts(ScheduledTaskPayload())

    assert len(tasks(TaskKind.REFRESH_APP_STORE_RECEIPTS.value)) == 1
