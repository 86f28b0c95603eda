"""App Store receipt verification and persistence of the verified transactions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import IntegrityError

from fitflow.common.logging import logger
from fitflow.common.metrics import receipt_verifications_total
from fitflow.common.outbox import enqueue_task
from fitflow.common.tasks import MailingListTag, TaskKind, UpdateListMemberTagsPayload
from fitflow.services.appstore.models import AppStorePendingRenewalInfo, AppStoreTransaction


APP_STORE_PROD_URL = "https://buy.itunes.apple.com/verifyReceipt"
APP_STORE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"
SANDBOX_RECEIPT_STATUS = 21007
AUTO_RENEW_OFF_TAG = "Turned off auto renew"


class ReceiptErrorKind(str, Enum):
    USER_CONFLICT = "user-conflict"
    TEMPORARY = "temporary"
    UNEXPECTED = "unexpected"
    INVALID_PARAMETERS = "invalid-parameters"


class AppStoreReceiptError(Exception):
    def __init__(self, kind: ReceiptErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


# Every documented non-zero status gets an explicit disposition here.
STATUS_DISPOSITIONS: dict[int, tuple[ReceiptErrorKind, str]] = {
    21000: (ReceiptErrorKind.UNEXPECTED, "The App Store could not read the JSON object you provided."),
    21002: (ReceiptErrorKind.INVALID_PARAMETERS, "The receiptData was malformed or missing."),
    21003: (ReceiptErrorKind.UNEXPECTED, "The receipt could not be authenticated."),
    21004: (
        ReceiptErrorKind.UNEXPECTED,
        "The shared secret you provided does not match the shared secret on file for your account.",
    ),
    21005: (ReceiptErrorKind.TEMPORARY, "The receipt server is not currently available."),
    21007: (
        ReceiptErrorKind.UNEXPECTED,
        "This receipt is from the test environment, but it was sent to the production environment for verification.",
    ),
    21008: (
        ReceiptErrorKind.UNEXPECTED,
        "This receipt is from the production environment, but it was sent to the test environment for verification.",
    ),
    21010: (
        ReceiptErrorKind.UNEXPECTED,
        "This receipt could not be authorized. Treat this the same as if a purchase was never made.",
    ),
}


def classify_status(status: int, is_retryable: bool = False) -> AppStoreReceiptError | None:
    """Map a verifyReceipt status to the error it represents; None for success."""

    if status == 0:
        return None
    if status in STATUS_DISPOSITIONS:
        kind, message = STATUS_DISPOSITIONS[status]
        return AppStoreReceiptError(kind, message)
    if 21100 <= status <= 21199 and is_retryable:
        return AppStoreReceiptError(ReceiptErrorKind.TEMPORARY, "App Store internal data access error. Try again.")
    return AppStoreReceiptError(ReceiptErrorKind.UNEXPECTED, f"Unexpected App Store response status {status}.")


class InAppReceipt(BaseModel):
    model_config = ConfigDict(extra="allow")

    transaction_id: str = Field(min_length=1)
    original_transaction_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    purchase_date_ms: str = Field(pattern=r"^\d+$")
    expires_date_ms: str = Field(pattern=r"^\d+$")
    web_order_line_item_id: str = Field(min_length=1)
    is_trial_period: Literal["true", "false"]
    is_in_intro_offer_period: Literal["true", "false"]


class PendingRenewalInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    product_id: str = Field(min_length=1)
    original_transaction_id: str = Field(min_length=1)
    auto_renew_status: Literal["0", "1"]


class VerifiedReceipt(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Literal[0]
    latest_receipt: str
    latest_receipt_info: list[InAppReceipt] = Field(min_length=1)
    receipt: Any = None
    pending_renewal_info: list[PendingRenewalInfo] | None = None


def from_millis(value: str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class ReceiptVerifier:
    """Posts receipts to Apple, following the production-to-sandbox redirect."""

    def __init__(
        self,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        production_url: str = APP_STORE_PROD_URL,
        sandbox_url: str = APP_STORE_SANDBOX_URL,
    ) -> None:
        self.client = httpx.Client(timeout=timeout, transport=transport)
        self.production_url = production_url
        self.sandbox_url = sandbox_url

    def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self.client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise AppStoreReceiptError(ReceiptErrorKind.TEMPORARY, f"Fetch failed: {exc}") from exc
        if not resp.is_success:
            raise AppStoreReceiptError(ReceiptErrorKind.TEMPORARY, f"Fetch failed with status {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise AppStoreReceiptError(ReceiptErrorKind.TEMPORARY, "Fetch failed: invalid JSON") from exc
        if not isinstance(payload, dict) or "status" not in payload:
            raise AppStoreReceiptError(ReceiptErrorKind.UNEXPECTED, "Apple response did not include a status code.")
        return payload

    def verify(self, encoded_receipt: str, shared_secret: str) -> dict[str, Any]:
        body = {
            "receipt-data": encoded_receipt,
            "password": shared_secret,
            "exclude-old-transactions": False,
        }
        payload = self._post(self.production_url, body)
        if _status(payload) == SANDBOX_RECEIPT_STATUS:
            payload = self._post(self.sandbox_url, body)
        return payload

    def close(self) -> None:
        self.client.close()


def _status(payload: dict[str, Any]) -> int | None:
    try:
        return int(payload["status"])
    except (TypeError, ValueError):
        return None


def _store_receipt(db, trainer_id: str, verified: VerifiedReceipt) -> None:
    items = sorted(verified.latest_receipt_info, key=lambda item: int(item.purchase_date_ms))
    for item in items:
        existing = db.get(AppStoreTransaction, item.transaction_id)
        if existing is not None and existing.trainer_id != trainer_id:
            raise AppStoreReceiptError(
                ReceiptErrorKind.USER_CONFLICT,
                f"Transaction {item.transaction_id} already belongs to another trainer.",
            )
        record = existing or AppStoreTransaction(transaction_id=item.transaction_id, trainer_id=trainer_id)
        record.original_transaction_id = item.original_transaction_id
        record.product_id = item.product_id
        record.purchase_date = from_millis(item.purchase_date_ms)
        record.expires_date = from_millis(item.expires_date_ms)
        record.web_order_line_item_id = item.web_order_line_item_id
        record.is_trial_period = item.is_trial_period == "true"
        record.is_in_intro_offer_period = item.is_in_intro_offer_period == "true"
        record.encoded_receipt = verified.latest_receipt
        if existing is None:
            db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        # A concurrent verification stored the same transaction for someone else.
        raise AppStoreReceiptError(ReceiptErrorKind.USER_CONFLICT, "Transaction claimed concurrently.") from exc

    renewals = verified.pending_renewal_info or []
    if not renewals:
        return
    if any(info.auto_renew_status == "0" for info in renewals):
        enqueue_task(
            db,
            TaskKind.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS,
            UpdateListMemberTagsPayload(
                trainer_id=trainer_id,
                tags=[MailingListTag(name=AUTO_RENEW_OFF_TAG, status="active")],
            ),
        )
    for info in renewals:
        db.merge(AppStorePendingRenewalInfo(trainer_id=trainer_id, product_id=info.product_id, data=info.model_dump()))


def process_apple_receipt(
    session_factory,
    verifier: ReceiptVerifier,
    trainer_id: str,
    encoded_receipt: str,
    shared_secret: str,
) -> VerifiedReceipt:
    """Verify one receipt and upsert its transactions and renewal info in one transaction."""

    try:
        payload = verifier.verify(encoded_receipt, shared_secret)
        status = _status(payload)
        error = classify_status(-1 if status is None else status, payload.get("is-retryable") is True)
        if error is not None:
            raise error
        try:
            verified = VerifiedReceipt.model_validate(payload)
        except ValidationError as exc:
            raise AppStoreReceiptError(ReceiptErrorKind.UNEXPECTED, f"Malformed receipt response: {exc}") from exc

        with session_factory() as db:
            _store_receipt(db, trainer_id, verified)
            db.commit()
    except AppStoreReceiptError as exc:
        receipt_verifications_total.labels(result=exc.kind.value).inc()
        raise

    receipt_verifications_total.labels(result="ok").inc()
    logger.info(
        "receipt verified trainer_id=%s transactions=%s", trainer_id, len(verified.latest_receipt_info)
    )
    return verified
