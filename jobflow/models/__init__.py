"""
SQLAlchemy model base class for the jobflow backend.

This package defines ORM models for automation rules and their runs, the
app event log they consume, and the narrow slices of the job, material,
billing, communications and org domains the engine reads or writes. All
models should inherit from the declarative `Base` defined here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return compiler.process(JSON(), **kw)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


from .app_event import AppEvent  # noqa: E402,F401
from .org import Org, OrgSettings, OrgMember, CommProviderStatus  # noqa: E402,F401
from .job import Job, JobType, JobContact, CrewMember, ScheduleAssignment, JobPhoto, JobActivityEvent  # noqa: E402,F401
from .task import Task, WorkTemplate, WorkTemplateStep  # noqa: E402,F401
from .billing import JobInvoice, JobPayment  # noqa: E402,F401
from .material import Material, MaterialInventoryEvent, MaterialUsageLog, MaterialAlert  # noqa: E402,F401
from .communication import CommTemplate, CommOutbox  # noqa: E402,F401
from .audit_log import AuditLog  # noqa: E402,F401
from .automation_rule import AutomationRule  # noqa: E402,F401
from .automation_run import AutomationRuleRun, AutomationRuleRunStep  # noqa: E402,F401

__all__ = [
    "Base",
    "utcnow",

    # Automation
    "AutomationRule",
    "AutomationRuleRun",
    "AutomationRuleRunStep",
    "AppEvent",

    # Org
    "Org",
    "OrgSettings",
    "OrgMember",
    "CommProviderStatus",

    # Jobs / Crew
    "Job",
    "JobType",
    "JobContact",
    "CrewMember",
    "ScheduleAssignment",
    "JobPhoto",
    "JobActivityEvent",
    "Task",
    "WorkTemplate",
    "WorkTemplateStep",

    # Billing
    "JobInvoice",
    "JobPayment",

    # Materials
    "Material",
    "MaterialInventoryEvent",
    "MaterialUsageLog",
    "MaterialAlert",

    # Communications / Audit
    "CommTemplate",
    "CommOutbox",
    "AuditLog",
]
