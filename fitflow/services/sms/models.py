"""Text messages queued to trainers' clients and the provider's record of each."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from fitflow.common.db import Base, JSONType


class Sms(Base):
    __tablename__ = "sms"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    trainer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    from_number: Mapped[str | None] = mapped_column(String, nullable=True)
    to_number: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    queue_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    queue_failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    twilio_message_sid: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TwilioMessage(Base):
    __tablename__ = "twilio_messages"

    sid: Mapped[str] = mapped_column(String, primary_key=True)
    object: Mapped[dict] = mapped_column(JSONType)
