"""Outbound mail and provider webhook event tables."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from fitflow.common.db import Base, JSONType


class Mail(Base):
    """One e-mail queued for delivery through the mail provider."""

    __tablename__ = "mails"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    trainer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    from_email: Mapped[str] = mapped_column(String)
    from_name: Mapped[str | None] = mapped_column(String, nullable=True)
    to_email: Mapped[str] = mapped_column(String)
    to_name: Mapped[str | None] = mapped_column(String, nullable=True)
    reply_to: Mapped[str | None] = mapped_column(String, nullable=True)
    subject: Mapped[str] = mapped_column(String)
    html: Mapped[str] = mapped_column(Text)
    mandrill_message_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MandrillEvent(Base):
    """Raw webhook event as received, keyed the way the provider identifies it."""

    __tablename__ = "mandrill_events"

    ts: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    message_id: Mapped[str] = mapped_column("_id", String, primary_key=True)
    event: Mapped[str] = mapped_column(String, primary_key=True)
    object: Mapped[dict] = mapped_column(JSONType)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MailOpen(Base):
    __tablename__ = "mail_opens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    mail_id: Mapped[str] = mapped_column(ForeignKey("mails.id"), index=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[dict | None] = mapped_column(JSONType, nullable=True)


class MailClick(Base):
    __tablename__ = "mail_clicks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    mail_id: Mapped[str] = mapped_column(ForeignKey("mails.id"), index=True)
    clicked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    url: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[dict | None] = mapped_column(JSONType, nullable=True)


class MailBounce(Base):
    __tablename__ = "mail_bounces"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    mail_id: Mapped[str] = mapped_column(ForeignKey("mails.id"), index=True)
    bounced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    bounce_type: Mapped[str] = mapped_column(String)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
