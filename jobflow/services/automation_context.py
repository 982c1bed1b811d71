"""
Resolve the read-only domain context an automation rule is evaluated against.

The resolver gathers every fact a condition, action or preview may need in
one pass so evaluation itself never touches the database. The resulting
`AutomationContext` is immutable and safe to share across evaluation,
execution and dry-run previews.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.app_event import AppEvent
from ..models.billing import JobInvoice, JobPayment
from ..models.job import Job, JobType, JobContact, CrewMember, ScheduleAssignment, JobPhoto, JobActivityEvent
from ..models.material import Material, MaterialInventoryEvent, MaterialUsageLog, MaterialAlert
from ..models.org import OrgSettings, OrgMember


logger = logging.getLogger("automation_context")

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def as_utc(ts: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


def iso_utc(ts: Optional[datetime.datetime]) -> Optional[str]:
    """Millisecond ISO-8601 with a trailing `Z`, e.g. `2026-03-01T09:30:00.000Z`."""
    ts = as_utc(ts)
    if ts is None:
        return None
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Mutable deep copy of a frozen value (mappings to dicts, tuples to lists)."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def _row_to_dict(row: Any) -> dict:
    out = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime.datetime):
            value = as_utc(value)
        out[column.key] = value
    return out


def _str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class EventSnapshot:
    id: str
    type: str
    occurred_at: datetime.datetime
    payload: Mapping[str, Any]
    actor_user_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: AppEvent) -> "EventSnapshot":
        return cls(
            id=event.id,
            type=event.event_type,
            occurred_at=as_utc(event.created_at) or datetime.datetime.now(datetime.timezone.utc),
            payload=freeze(dict(event.payload or {})),
            actor_user_id=event.actor_user_id,
        )


@dataclass(frozen=True)
class OrgUser:
    user_id: str
    name: Optional[str]
    email: Optional[str]
    role_key: Optional[str]
    crew_member_id: Optional[str]


@dataclass(frozen=True)
class AutomationContext:
    event: EventSnapshot
    job: Optional[Mapping[str, Any]] = None
    assignment: Optional[Mapping[str, Any]] = None
    material: Optional[Mapping[str, Any]] = None
    client_contact: Optional[Mapping[str, Any]] = None
    site_contacts: tuple = ()
    crew: tuple = ()
    org_settings: Optional[Mapping[str, Any]] = None
    org_users: tuple = ()
    payment: Optional[Mapping[str, Any]] = None
    invoice: Optional[Mapping[str, Any]] = None
    computed: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)

    @property
    def payload(self) -> Mapping[str, Any]:
        return self.event.payload

    @property
    def entity(self) -> Optional[Mapping[str, Any]]:
        return self.assignment or self.job or self.material

    @property
    def now(self) -> datetime.datetime:
        return self.computed.get("now") or datetime.datetime.now(datetime.timezone.utc)


class ContextResolver(Protocol):
    def __call__(
        self, db: Session, org_id: str, event: AppEvent, *, now: Optional[datetime.datetime] = None
    ) -> AutomationContext: ...


def _date_start(value: Any) -> Optional[datetime.datetime]:
    if isinstance(value, datetime.datetime):
        return as_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.date.fromisoformat(value[:10])
        except ValueError:
            return None
        return datetime.datetime(parsed.year, parsed.month, parsed.day, tzinfo=datetime.timezone.utc)
    return None


def _load_payment(db: Session, org_id: str, payment_id: Optional[str], job_id: Optional[str]) -> Optional[JobPayment]:
    row = None
    if payment_id:
        row = db.query(JobPayment).filter(JobPayment.org_id == org_id, JobPayment.id == payment_id).first()
    if row is None and job_id:
        row = (
            db.query(JobPayment)
            .filter(JobPayment.org_id == org_id, JobPayment.job_id == job_id)
            .order_by(JobPayment.created_at.desc())
            .first()
        )
    return row


def _load_invoice(db: Session, org_id: str, invoice_id: Optional[str], job_id: Optional[str]) -> Optional[JobInvoice]:
    row = None
    if invoice_id:
        row = db.query(JobInvoice).filter(JobInvoice.org_id == org_id, JobInvoice.id == invoice_id).first()
    if row is None and job_id:
        row = (
            db.query(JobInvoice)
            .filter(JobInvoice.org_id == org_id, JobInvoice.job_id == job_id)
            .order_by(JobInvoice.created_at.desc())
            .first()
        )
    return row


def _load_latest_note(db: Session, org_id: str, job_id: str) -> Optional[str]:
    row = (
        db.query(JobActivityEvent)
        .filter(
            JobActivityEvent.org_id == org_id,
            JobActivityEvent.job_id == job_id,
            JobActivityEvent.type == "note_added",
        )
        .order_by(JobActivityEvent.created_at.desc())
        .first()
    )
    if not row:
        return None
    message = (row.payload or {}).get("message")
    return message if isinstance(message, str) else None


def _load_org_users(db: Session, org_id: str) -> tuple[OrgUser, ...]:
    rows = (
        db.query(OrgMember)
        .filter(OrgMember.org_id == org_id, OrgMember.status == "active")
        .order_by(OrgMember.user_id.asc())
        .all()
    )
    return tuple(
        OrgUser(
            user_id=row.user_id,
            name=row.name,
            email=row.email,
            role_key=row.role_key,
            crew_member_id=row.crew_member_id,
        )
        for row in rows
    )


def resolve_automation_context(
    db: Session,
    org_id: str,
    event: AppEvent,
    *,
    now: Optional[datetime.datetime] = None,
) -> AutomationContext:
    """
    Load the job, assignment, material, contacts, crew, org settings/users and
    billing rows referenced by the event payload and precompute derived facts.

    Missing referenced rows resolve to `None`; this function does not raise
    for absent data.
    """
    now = as_utc(now) or datetime.datetime.now(datetime.timezone.utc)
    snapshot = EventSnapshot.from_event(event)
    payload = snapshot.payload

    job_id = _str(payload.get("jobId"))
    assignment_id = _str(payload.get("assignmentId"))
    material_id = _str(payload.get("materialId"))
    crew_id = _str(payload.get("crewId"))
    date_str = _str(payload.get("date"))

    settings_row = db.get(OrgSettings, org_id)
    job_row = (
        db.query(Job).filter(Job.org_id == org_id, Job.id == job_id).first() if job_id else None
    )
    assignment_row = (
        db.query(ScheduleAssignment)
        .filter(ScheduleAssignment.org_id == org_id, ScheduleAssignment.id == assignment_id)
        .first()
        if assignment_id
        else None
    )
    material_row = (
        db.query(Material).filter(Material.org_id == org_id, Material.id == material_id).first()
        if material_id
        else None
    )

    contact_rows = (
        db.query(JobContact)
        .filter(JobContact.org_id == org_id, JobContact.job_id == job_id)
        .order_by(JobContact.id.asc())
        .all()
        if job_id
        else []
    )
    client_contact = next((c for c in contact_rows if (c.role or "").lower() == "client"), None)
    site_contacts = [c for c in contact_rows if "site" in (c.role or "").lower()]

    crew_ids: list[str] = []
    for candidate in (
        crew_id,
        assignment_row.crew_id if assignment_row else None,
        job_row.crew_id if job_row else None,
    ):
        if candidate and candidate not in crew_ids:
            crew_ids.append(candidate)
    crew_rows = (
        db.query(CrewMember)
        .filter(CrewMember.org_id == org_id, CrewMember.id.in_(crew_ids))
        .order_by(CrewMember.id.asc())
        .all()
        if crew_ids
        else []
    )

    computed: dict[str, Any] = {"now": now}

    if assignment_row and assignment_row.start_minutes is not None and assignment_row.end_minutes is not None:
        computed["assignment_duration_minutes"] = assignment_row.end_minutes - assignment_row.start_minutes
        day = _date_start(assignment_row.date)
        if day is not None:
            computed["schedule_start_at"] = day + datetime.timedelta(minutes=assignment_row.start_minutes)
            computed["schedule_end_at"] = day + datetime.timedelta(minutes=assignment_row.end_minutes)
    elif job_row and job_row.scheduled_start and job_row.scheduled_end:
        start = as_utc(job_row.scheduled_start)
        end = as_utc(job_row.scheduled_end)
        computed["job_duration_minutes"] = round((end - start).total_seconds() / 60)
        computed["schedule_start_at"] = start
        computed["schedule_end_at"] = end

    if job_row and job_row.scheduled_end:
        computed["job_overdue"] = as_utc(job_row.scheduled_end) < now and job_row.status != "completed"

    start_minutes = payload.get("startMinutes")
    if "schedule_start_at" not in computed and date_str and isinstance(start_minutes, (int, float)):
        day = _date_start(date_str)
        if day is not None:
            computed["schedule_start_at"] = day + datetime.timedelta(minutes=start_minutes)

    if crew_id and date_str:
        day = _date_start(date_str)
        if day is not None:
            rows = (
                db.query(ScheduleAssignment.start_minutes, ScheduleAssignment.end_minutes)
                .filter(
                    ScheduleAssignment.org_id == org_id,
                    ScheduleAssignment.crew_id == crew_id,
                    ScheduleAssignment.date == day.date(),
                )
                .all()
            )
            computed["crew_daily_minutes"] = sum(
                (end or 0) - (start or 0) for start, end in rows
            )

    if material_id:
        current = (
            db.query(func.coalesce(func.sum(MaterialInventoryEvent.quantity), 0.0))
            .filter(MaterialInventoryEvent.org_id == org_id, MaterialInventoryEvent.material_id == material_id)
            .scalar()
        )
        current = float(current or 0)
        reserved = float(material_row.reserved_quantity or 0) if material_row else 0.0
        computed["material_current_stock"] = current
        computed["material_reserved"] = reserved
        computed["material_available"] = current - reserved
        usage = (
            db.query(func.coalesce(func.sum(MaterialUsageLog.quantity_used), 0.0))
            .filter(
                MaterialUsageLog.org_id == org_id,
                MaterialUsageLog.material_id == material_id,
                MaterialUsageLog.created_at >= now - datetime.timedelta(days=30),
            )
            .scalar()
        )
        usage = float(usage or 0)
        computed["material_usage_30d_total"] = usage
        computed["material_avg_daily_usage_30d"] = usage / 30

    effective_job_id = job_id or (job_row.id if job_row else None)
    job_type_id = (job_row.job_type_id if job_row else None) or _str(payload.get("jobTypeId"))
    if job_type_id:
        type_row = db.query(JobType).filter(JobType.org_id == org_id, JobType.id == job_type_id).first()
        computed["job_type_key"] = type_row.key if type_row else None
    if effective_job_id:
        computed["job_photo_count"] = int(
            db.query(func.count(JobPhoto.id))
            .filter(JobPhoto.org_id == org_id, JobPhoto.job_id == effective_job_id)
            .scalar()
            or 0
        )
        computed["latest_job_note"] = _load_latest_note(db, org_id, effective_job_id)

    payment_row = _load_payment(db, org_id, _str(payload.get("paymentId")), effective_job_id)
    invoice_row = _load_invoice(db, org_id, _str(payload.get("invoiceId")), effective_job_id)

    computed["overdue_jobs_exist"] = (
        db.query(Job.id)
        .filter(Job.org_id == org_id, Job.scheduled_end < now, Job.status != "completed")
        .first()
        is not None
    )
    computed["low_stock_exists"] = (
        db.query(MaterialAlert.id)
        .filter(
            MaterialAlert.org_id == org_id,
            MaterialAlert.type == "low_stock",
            MaterialAlert.resolved_at.is_(None),
        )
        .first()
        is not None
    )

    return AutomationContext(
        event=snapshot,
        job=freeze(_row_to_dict(job_row)) if job_row else None,
        assignment=freeze(_row_to_dict(assignment_row)) if assignment_row else None,
        material=freeze(_row_to_dict(material_row)) if material_row else None,
        client_contact=freeze(_row_to_dict(client_contact)) if client_contact else None,
        site_contacts=tuple(freeze(_row_to_dict(c)) for c in site_contacts),
        crew=tuple(freeze(_row_to_dict(c)) for c in crew_rows),
        org_settings=freeze(_row_to_dict(settings_row)) if settings_row else None,
        org_users=_load_org_users(db, org_id),
        payment=freeze(_row_to_dict(payment_row)) if payment_row else None,
        invoice=freeze(_row_to_dict(invoice_row)) if invoice_row else None,
        computed=MappingProxyType(computed),
    )
