"""
Communication templates and the outbox rows automations hand off for delivery.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class CommTemplate(Base):
    __tablename__ = "comm_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(36))
    key: Mapped[str] = mapped_column(String(128))
    channel: Mapped[str] = mapped_column(String(16))  # email | sms | in_app
    version: Mapped[int] = mapped_column(Integer, default=1)
    subject: Mapped[str | None] = mapped_column(String(256), nullable=True)
    body: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_comm_templates_org_key_channel", "org_id", "key", "channel"),
    )


class CommOutbox(Base):
    __tablename__ = "comm_outbox"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(36))
    # Groups the rows produced by a single emit call.
    event_id: Mapped[str] = mapped_column(String(36), index=True)
    template_key: Mapped[str] = mapped_column(String(128))
    channel: Mapped[str] = mapped_column(String(16))
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recipient_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    subject_rendered: Mapped[str | None] = mapped_column(String(256), nullable=True)
    body_rendered: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), default="PENDING")  # PENDING | SENT | FAILED
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_comm_outbox_org_event", "org_id", "event_id"),
    )
