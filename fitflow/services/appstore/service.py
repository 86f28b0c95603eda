"""Twice-daily re-verification of active App Store subscriptions."""

from datetime import timedelta

from sqlalchemy import select

from fitflow.common.db import utcnow
from fitflow.common.logging import logger
from fitflow.common.schedules import rescheduling
from fitflow.common.tasks import ScheduledTaskPayload, TaskKind
from fitflow.services.appstore.models import AppStoreTransaction
from fitflow.services.appstore.receipts import AppStoreReceiptError, ReceiptVerifier, process_apple_receipt


REFRESH_LOOKBACK = timedelta(days=60)


class AppStoreNotConfigured(RuntimeError):
    def __init__(self) -> None:
        super().__init__("App Store shared secret is not configured")


class AppStoreService:
    def __init__(self, session_factory, verifier: ReceiptVerifier, shared_secret: str | None) -> None:
        self.session_factory = session_factory
        self.verifier = verifier
        self.shared_secret = shared_secret

    def latest_receipts(self, db) -> list[tuple[str, str]]:
        """`(trainer_id, encoded_receipt)` of the newest transaction per subscription, recently expired included."""

        rows = db.execute(
            select(
                AppStoreTransaction.original_transaction_id,
                AppStoreTransaction.trainer_id,
                AppStoreTransaction.encoded_receipt,
            )
            .where(AppStoreTransaction.expires_date > utcnow() - REFRESH_LOOKBACK)
            .order_by(
                AppStoreTransaction.original_transaction_id,
                AppStoreTransaction.trainer_id,
                AppStoreTransaction.expires_date.desc(),
            )
        ).all()
        seen: set[tuple[str, str]] = set()
        latest = []
        for row in rows:
            key = (row.original_transaction_id, row.trainer_id)
            if key in seen:
                continue
            seen.add(key)
            latest.append((row.trainer_id, row.encoded_receipt))
        return latest

    def handle_refresh_app_store_receipts(self, payload: ScheduledTaskPayload) -> None:
        with rescheduling(self.session_factory, TaskKind.REFRESH_APP_STORE_RECEIPTS, payload.scheduled_at):
            if not self.shared_secret:
                raise AppStoreNotConfigured()
            with self.session_factory() as db:
                receipts = self.latest_receipts(db)

            failed = 0
            for trainer_id, encoded_receipt in receipts:
                try:
                    process_apple_receipt(
                        self.session_factory, self.verifier, trainer_id, encoded_receipt, self.shared_secret
                    )
                except AppStoreReceiptError as exc:
                    failed += 1
                    logger.warning(
                        "receipt refresh failed trainer_id=%s kind=%s error=%s", trainer_id, exc.kind.value, exc
                    )
            logger.info("app store receipts refreshed total=%s failed=%s", len(receipts), failed)
