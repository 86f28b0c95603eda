"""Verified App Store purchases and renewal state per trainer."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fitflow.common.db import Base, JSONType


class AppStoreTransaction(Base):
    """One purchase or renewal. A transaction id belongs to exactly one trainer."""

    __tablename__ = "app_store_transactions"
    __table_args__ = (UniqueConstraint("transaction_id", "trainer_id", name="uq_app_store_transaction_trainer"),)

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True)
    trainer_id: Mapped[str] = mapped_column(String, index=True)
    original_transaction_id: Mapped[str] = mapped_column(String, index=True)
    product_id: Mapped[str] = mapped_column(String)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    web_order_line_item_id: Mapped[str] = mapped_column(String)
    is_trial_period: Mapped[bool] = mapped_column(Boolean)
    is_in_intro_offer_period: Mapped[bool] = mapped_column(Boolean)
    encoded_receipt: Mapped[str] = mapped_column(Text)


class AppStorePendingRenewalInfo(Base):
    __tablename__ = "app_store_pending_renewal_info"

    trainer_id: Mapped[str] = mapped_column(String, primary_key=True)
    product_id: Mapped[str] = mapped_column(String, primary_key=True)
    data: Mapped[dict] = mapped_column(JSONType)
