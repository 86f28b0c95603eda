"""Device registrations and in-app notifications."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from fitflow.common.db import Base


class Installation(Base):
    """One push-capable device registered by a user."""

    __tablename__ = "installations"
    __table_args__ = (UniqueConstraint("user_id", "device_token", name="uq_installation_user_device"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String, index=True)
    device_token: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AppNotification(Base):
    __tablename__ = "app_notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    trainer_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    user_type: Mapped[str] = mapped_column(String, default="trainer")
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_plan_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    session_pack_id: Mapped[str | None] = mapped_column(String, nullable=True)
    body: Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String)
    notification_type: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
