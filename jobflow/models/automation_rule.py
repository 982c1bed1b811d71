"""
Data model for user-authored automation rules.

A rule subscribes to one trigger key, carries an ordered list of
conditions and an ordered list of actions, and is only ever mutated by
explicit save/enable/disable operations. The derived delivery flags are
recomputed from the actions on every save.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, Integer, Boolean, JSON, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[str] = mapped_column(String(36))
    name: Mapped[str] = mapped_column(String(140))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_key: Mapped[str] = mapped_column(String(64))
    trigger_version: Mapped[int] = mapped_column(Integer, default=1)
    conditions: Mapped[list] = mapped_column(JSON, default=list)
    actions: Mapped[list] = mapped_column(JSON, default=list)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    is_customer_facing: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_email: Mapped[bool] = mapped_column(Boolean, default=False)
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_enabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_automation_rules_org_trigger_enabled", "org_id", "trigger_key", "enabled"),
    )
