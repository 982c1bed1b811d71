"""
Catalog of trigger keys and the conditions each trigger may use.

`CONDITIONS_BY_TRIGGER` is the single source of truth for which
conditions are legal per trigger; validation and evaluation both read it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.orm import Session

from ..models.job import CrewMember
from ..models.material import Material


TRIGGER_KEYS: tuple[str, ...] = (
    "job.created",
    "job.assigned",
    "job.rescheduled",
    "job.status_updated",
    "job.progress_updated",
    "job.completed",
    "job.photo_added",
    "job.notes_updated",
    "invoice.sent",
    "invoice.issued",
    "invoice.paid",
    "invoice.overdue",
    "payment.received",
    "payment.recorded",
    "material.stock_low",
    "material.stock_updated",
    "time.daily",
)

JOB_CONTEXT_TRIGGERS = frozenset(
    {
        "job.created",
        "job.assigned",
        "job.rescheduled",
        "job.status_updated",
        "job.progress_updated",
        "job.completed",
        "job.photo_added",
        "job.notes_updated",
    }
)
MATERIAL_CONTEXT_TRIGGERS = frozenset({"material.stock_low", "material.stock_updated"})
BILLING_CONTEXT_TRIGGERS = JOB_CONTEXT_TRIGGERS | frozenset(
    {
        "invoice.sent",
        "invoice.issued",
        "invoice.paid",
        "invoice.overdue",
        "payment.received",
        "payment.recorded",
    }
)

VALUE_TYPES = ("enum", "number", "boolean", "percentage", "hours", "text")
ENUM_SOURCES = ("crew", "material_category")

JOB_TYPE_VALUES = ("install", "repair", "maintenance", "quote")
JOB_PRIORITY_VALUES = ("low", "normal", "high", "urgent")
JOB_STATUS_VALUES = ("pending", "scheduled", "in_progress", "completed", "cancelled")
INVOICE_CUSTOMER_TYPES = ("residential", "commercial")
PAYMENT_METHODS = ("stripe_card", "eft", "cash", "cheque", "pos", "xero", "other")


@dataclass(frozen=True)
class ConditionDefinition:
    key: str
    label: str
    description: str
    value_type: str
    operators: tuple[str, ...] = ()
    enum_values: tuple[str, ...] = ()
    enum_source: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    requires_job_context: bool = False
    requires_material_context: bool = False
    requires_billing_context: bool = False

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "description": self.description,
            "value_type": self.value_type,
            "operators": list(self.operators),
            "enum_values": list(self.enum_values),
            "enum_source": self.enum_source,
            "min": self.min,
            "max": self.max,
            "step": self.step,
            "requires_job_context": self.requires_job_context,
            "requires_material_context": self.requires_material_context,
            "requires_billing_context": self.requires_billing_context,
        }


def _job(key: str, label: str, description: str, value_type: str, **kw) -> ConditionDefinition:
    return ConditionDefinition(key, label, description, value_type, requires_job_context=True, **kw)


def _material(key: str, label: str, description: str, value_type: str, **kw) -> ConditionDefinition:
    return ConditionDefinition(key, label, description, value_type, requires_material_context=True, **kw)


def _billing(key: str, label: str, description: str, value_type: str, **kw) -> ConditionDefinition:
    return ConditionDefinition(key, label, description, value_type, requires_billing_context=True, **kw)


JOB_TYPE_EQUALS = _job(
    "job.type_equals", "Job type equals",
    "Match when the job type matches the selected value.", "enum", enum_values=JOB_TYPE_VALUES,
)
JOB_PRIORITY_EQUALS = _job(
    "job.priority_equals", "Job priority equals",
    "Match when the job priority matches the selected value.", "enum", enum_values=JOB_PRIORITY_VALUES,
)
JOB_HAS_TAG = _job("job.has_tag", "Job has tag", "Match when the job has the specified tag.", "text")
JOB_IS_ASSIGNED = _job(
    "job.is_assigned", "Job is assigned", "Match based on whether the job has an assigned crew.", "boolean",
)
JOB_ASSIGNED_TO_CREW = _job(
    "job.assigned_to_crew", "Assigned to crew",
    "Match when the job is assigned to a specific crew.", "enum", enum_source="crew",
)
JOB_ASSIGNED_TO_ANY = _job(
    "job.assigned_to_any", "Assigned to any crew", "Match when the job has any crew assignment.", "boolean",
)
JOB_SCHEDULED_WITHIN_HOURS = _job(
    "job.scheduled_within_hours", "Scheduled within hours",
    "Match when the scheduled start is within the next N hours.", "hours", min=1, max=168,
)
JOB_RESCHEDULED_WITHIN_HOURS = _job(
    "job.rescheduled_within_hours", "Rescheduled within hours",
    "Match when the new scheduled start is within the next N hours.", "hours", min=1, max=168,
)
JOB_NEW_STATUS_EQUALS = _job(
    "job.new_status_equals", "New status equals",
    "Match when the job changes to the selected status.", "enum", enum_values=JOB_STATUS_VALUES,
)
JOB_PREVIOUS_STATUS_EQUALS = _job(
    "job.previous_status_equals", "Previous status equals",
    "Match when the job changes from the selected status.", "enum", enum_values=JOB_STATUS_VALUES,
)
JOB_PROGRESS_GTE = _job(
    "job.progress_gte", "Progress at least",
    "Match when job progress is greater than or equal to a percentage.", "percentage", min=0, max=100, step=5,
)
JOB_PROGRESS_LTE = _job(
    "job.progress_lte", "Progress at most",
    "Match when job progress is less than or equal to a percentage.", "percentage", min=0, max=100, step=5,
)
JOB_WAS_PAID = replace(
    _job("job.was_paid", "Job was paid", "Match when the job has been paid.", "boolean"),
    requires_billing_context=True,
)
JOB_PHOTO_COUNT_GTE = _job(
    "job.photo_count_gte", "Photo count at least", "Match when the job has at least N photos.", "number", min=1,
)
JOB_NOTE_CONTAINS = _job(
    "job.note_contains", "Note contains", "Match when the latest note contains the provided text.", "text",
)

MATERIAL_STOCK_BELOW = _material(
    "material.stock_below", "Stock below",
    "Match when available stock is below the specified amount.", "number", min=0,
)
MATERIAL_CATEGORY_EQUALS = _material(
    "material.category_equals", "Material category equals",
    "Match when the material category matches the selected value.", "enum", enum_source="material_category",
)
MATERIAL_IS_CRITICAL = _material(
    "material.is_critical", "Material is critical", "Match when material availability is critical.", "boolean",
)
MATERIAL_STOCK_DELTA_GTE = _material(
    "material.stock_delta_gte", "Stock delta at least",
    "Match when the stock change is greater than or equal to the specified amount.", "number",
)

INVOICE_TOTAL_GTE = _billing(
    "invoice.total_gte", "Invoice total at least",
    "Match when the invoice total is greater than or equal to the specified amount.", "number", min=0,
)
INVOICE_IS_OVERDUE = _billing(
    "invoice.is_overdue", "Invoice is overdue", "Match when the invoice is overdue.", "boolean",
)
INVOICE_CUSTOMER_TYPE_EQUALS = _billing(
    "invoice.customer_type_equals", "Customer type equals",
    "Match when the invoice customer type matches the selected value.", "enum", enum_values=INVOICE_CUSTOMER_TYPES,
)
PAYMENT_AMOUNT_GTE = _billing(
    "payment.amount_gte", "Payment amount at least",
    "Match when the payment amount is greater than or equal to the specified amount.", "number", min=0,
)
PAYMENT_METHOD_EQUALS = _billing(
    "payment.method_equals", "Payment method equals",
    "Match when the payment method matches the selected value.", "enum", enum_values=PAYMENT_METHODS,
)
INVOICE_IS_FULLY_PAID = _billing(
    "invoice.is_fully_paid", "Invoice is fully paid", "Match when the invoice has been fully paid.", "boolean",
)

TIME_LOCAL_HOUR_EQUALS = ConditionDefinition(
    "time.local_hour_equals", "Local hour equals",
    "Match when the local hour equals the selected value.", "number", min=0, max=23,
)
JOB_OVERDUE_EXISTS = ConditionDefinition(
    "job.overdue_exists", "Overdue job exists", "Match when at least one overdue job exists.", "boolean",
)
MATERIAL_STOCK_LOW_EXISTS = ConditionDefinition(
    "material.stock_low_exists", "Low stock exists",
    "Match when at least one low-stock material alert exists.", "boolean",
)

_INVOICE_CONDITIONS = (INVOICE_TOTAL_GTE, INVOICE_IS_OVERDUE, INVOICE_CUSTOMER_TYPE_EQUALS)
_PAYMENT_CONDITIONS = (PAYMENT_AMOUNT_GTE, PAYMENT_METHOD_EQUALS, INVOICE_IS_FULLY_PAID)

CONDITIONS_BY_TRIGGER: dict[str, tuple[ConditionDefinition, ...]] = {
    "job.created": (JOB_TYPE_EQUALS, JOB_PRIORITY_EQUALS, JOB_HAS_TAG, JOB_IS_ASSIGNED),
    "job.assigned": (JOB_ASSIGNED_TO_CREW, JOB_ASSIGNED_TO_ANY, JOB_SCHEDULED_WITHIN_HOURS),
    "job.rescheduled": (JOB_RESCHEDULED_WITHIN_HOURS, JOB_PRIORITY_EQUALS, JOB_HAS_TAG),
    "job.status_updated": (JOB_NEW_STATUS_EQUALS, JOB_PREVIOUS_STATUS_EQUALS, JOB_PRIORITY_EQUALS, JOB_HAS_TAG),
    "job.progress_updated": (JOB_PROGRESS_GTE, JOB_PROGRESS_LTE, JOB_HAS_TAG),
    "job.completed": (JOB_TYPE_EQUALS, JOB_HAS_TAG, JOB_WAS_PAID),
    "job.photo_added": (JOB_PHOTO_COUNT_GTE, JOB_HAS_TAG),
    "job.notes_updated": (JOB_NOTE_CONTAINS, JOB_HAS_TAG),
    "material.stock_low": (MATERIAL_STOCK_BELOW, MATERIAL_CATEGORY_EQUALS, MATERIAL_IS_CRITICAL),
    "material.stock_updated": (MATERIAL_STOCK_DELTA_GTE, MATERIAL_CATEGORY_EQUALS),
    "invoice.sent": _INVOICE_CONDITIONS,
    "invoice.issued": _INVOICE_CONDITIONS,
    "invoice.paid": (INVOICE_TOTAL_GTE, INVOICE_IS_FULLY_PAID, INVOICE_CUSTOMER_TYPE_EQUALS),
    "invoice.overdue": _INVOICE_CONDITIONS,
    "payment.received": _PAYMENT_CONDITIONS,
    "payment.recorded": _PAYMENT_CONDITIONS,
    "time.daily": (TIME_LOCAL_HOUR_EQUALS, JOB_OVERDUE_EXISTS, MATERIAL_STOCK_LOW_EXISTS),
}

CONDITION_DEFINITIONS_BY_KEY: dict[str, ConditionDefinition] = {
    definition.key: definition
    for definitions in CONDITIONS_BY_TRIGGER.values()
    for definition in definitions
}

if set(CONDITIONS_BY_TRIGGER) != set(TRIGGER_KEYS):
    raise RuntimeError("CONDITIONS_BY_TRIGGER must cover every trigger key")


def is_trigger_key(value: object) -> bool:
    return isinstance(value, str) and value in CONDITIONS_BY_TRIGGER


def get_condition_definition(key: str) -> Optional[ConditionDefinition]:
    return CONDITION_DEFINITIONS_BY_KEY.get(key)


def conditions_for_trigger(trigger_key: str) -> tuple[ConditionDefinition, ...]:
    return CONDITIONS_BY_TRIGGER.get(trigger_key, ())


def trigger_supports_context(trigger_key: str) -> dict[str, bool]:
    return {
        "job": trigger_key in JOB_CONTEXT_TRIGGERS,
        "material": trigger_key in MATERIAL_CONTEXT_TRIGGERS,
        "billing": trigger_key in BILLING_CONTEXT_TRIGGERS,
    }


def resolve_enum_values(db: Session, org_id: str, source: str) -> list[dict]:
    """
    Resolve a dynamic enum source into `{value, label}` options for the org.

    Crews are listed by display name; material categories are the distinct
    non-empty categories in the org's material list.
    """
    if source == "crew":
        rows = (
            db.query(CrewMember)
            .filter(CrewMember.org_id == org_id)
            .order_by(CrewMember.display_name.asc(), CrewMember.id.asc())
            .all()
        )
        options = []
        for row in rows:
            label = row.display_name or " ".join(p for p in (row.first_name, row.last_name) if p) or row.id
            options.append({"value": row.id, "label": label})
        return options
    if source == "material_category":
        rows = (
            db.query(Material.category)
            .filter(Material.org_id == org_id, Material.category.isnot(None))
            .distinct()
            .order_by(Material.category.asc())
            .all()
        )
        return [{"value": cat, "label": cat} for (cat,) in rows if cat and cat.strip()]
    raise ValueError(f"Unknown enum source: {source}")
