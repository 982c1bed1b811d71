"""
Pure evaluation of a rule's conditions against a resolved automation context.

Conditions are checked in order. An unknown key, a missing required
context, or a predicate whose input is absent stops evaluation with the
error "Condition context missing"; the failing condition is recorded with
`passed = False`.
"""

from __future__ import annotations

import datetime
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .automation_context import AutomationContext, as_utc, iso_utc
from .condition_catalog import get_condition_definition
from ..schemas.automation_rule import RuleCondition


logger = logging.getLogger("condition_evaluator")

CONTEXT_MISSING = "Condition context missing"

PROGRESS_STATUS_PERCENT = {
    "not_started": 0,
    "in_progress": 25,
    "half_complete": 50,
    "completed": 100,
}


class _Missing(Exception):
    """Raised by a predicate when its input is absent."""

    def __init__(self, evaluated: Any = None):
        super().__init__(CONTEXT_MISSING)
        self.evaluated = evaluated


@dataclass
class RuleEvaluation:
    matched: bool
    match_details: dict = field(default_factory=lambda: {"conditions": []})
    error: Optional[str] = None
    payment_status: Optional[str] = None


def _num(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return round(float(value), 2)


def _threshold(condition: RuleCondition) -> float:
    value = condition.value
    if isinstance(value, str):
        value = float(value)
    return round(float(value), 2)


def _same_bool(evaluated: Any, expected: Any) -> bool:
    return isinstance(expected, bool) and bool(evaluated) is expected


def _first_str(payload, *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _first_bool(payload, *keys: str) -> Optional[bool]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            return value
    return None


def _first_num(payload, *keys: str) -> Optional[float]:
    for key in keys:
        value = _num(payload.get(key))
        if value is not None:
            return value
    return None


def normalize_payment_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    lowered = status.lower()
    if lowered in ("paid", "succeeded"):
        return "paid"
    if lowered == "overdue":
        return "overdue"
    return "unpaid"


def _crew_id(ctx: AutomationContext) -> Optional[str]:
    for value in (
        ctx.assignment.get("crew_id") if ctx.assignment else None,
        ctx.job.get("crew_id") if ctx.job else None,
        ctx.payload.get("crewId"),
    ):
        if isinstance(value, str) and value:
            return value
    return None


def _scheduled_start(ctx: AutomationContext) -> Optional[datetime.datetime]:
    start = ctx.computed.get("schedule_start_at")
    if isinstance(start, datetime.datetime):
        return as_utc(start)
    raw = ctx.job.get("scheduled_start") if ctx.job else None
    if isinstance(raw, datetime.datetime):
        return as_utc(raw)
    return None


def _local_hour(now: datetime.datetime, tz_name: Optional[str]) -> int:
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown org timezone %r; falling back to UTC", tz_name)
        tz = datetime.timezone.utc
    return now.astimezone(tz).hour


# Predicates return (passed, evaluated_value) or raise _Missing.

def _job_type_equals(cond, ctx, now):
    key = ctx.computed.get("job_type_key")
    if "job_type_key" not in ctx.computed:
        raise _Missing()
    return key == cond.value, key


def _job_priority_equals(cond, ctx, now):
    priority = ctx.job.get("priority") if ctx.job else None
    if not priority:
        raise _Missing()
    return priority == cond.value, priority


def _job_has_tag(cond, ctx, now):
    tags = ctx.job.get("tags") if ctx.job else None
    if not isinstance(tags, (list, tuple)):
        raise _Missing()
    return cond.value in tags, list(tags)


def _job_is_assigned(cond, ctx, now):
    assigned = _crew_id(ctx) is not None
    return _same_bool(assigned, cond.value), assigned


def _job_assigned_to_crew(cond, ctx, now):
    crew_id = _crew_id(ctx)
    return crew_id == cond.value, crew_id


def _scheduled_within_hours(cond, ctx, now):
    start = _scheduled_start(ctx)
    if start is None:
        raise _Missing()
    diff_hours = (start - now).total_seconds() / 3600
    return 0 <= diff_hours <= _threshold(cond), iso_utc(start)


def _job_new_status_equals(cond, ctx, now):
    status = _first_str(ctx.payload, "status") or (ctx.job.get("status") if ctx.job else None)
    if not status:
        raise _Missing()
    return status == cond.value, status


def _job_previous_status_equals(cond, ctx, now):
    previous = _first_str(ctx.payload, "previousStatus", "previous_status")
    if not previous:
        raise _Missing()
    return previous == cond.value, previous


def resolve_progress_percent(ctx: AutomationContext) -> Optional[float]:
    percent = _num(ctx.payload.get("progressPercent"))
    if percent is not None:
        return max(0.0, min(100.0, percent))
    status = ctx.job.get("progress_status") if ctx.job else None
    if isinstance(status, str):
        return float(PROGRESS_STATUS_PERCENT.get(status, 0))
    return None


def _job_progress(cond, ctx, now):
    percent = resolve_progress_percent(ctx)
    if percent is None:
        raise _Missing()
    if cond.key == "job.progress_gte":
        return percent >= _threshold(cond), percent
    return percent <= _threshold(cond), percent


def _job_was_paid(cond, ctx, now):
    status = normalize_payment_status(ctx.payment.get("status") if ctx.payment else None)
    return _same_bool(status == "paid", cond.value), status


def _job_photo_count_gte(cond, ctx, now):
    count = ctx.computed.get("job_photo_count")
    if count is None:
        raise _Missing()
    return count >= _threshold(cond), count


def _job_note_contains(cond, ctx, now):
    if "latest_job_note" not in ctx.computed:
        raise _Missing()
    note = ctx.computed.get("latest_job_note")
    if not note or not isinstance(cond.value, str):
        return False, note
    return cond.value.lower() in note.lower(), note


def _material_stock_below(cond, ctx, now):
    current = _num(ctx.computed.get("material_available"))
    if current is None:
        current = _num(ctx.computed.get("material_current_stock"))
    if current is None:
        raise _Missing()
    return current < _threshold(cond), current


def _material_category_equals(cond, ctx, now):
    category = ctx.material.get("category")
    return isinstance(category, str) and category == cond.value, category


def _material_is_critical(cond, ctx, now):
    available = _num(ctx.computed.get("material_available"))
    if available is None:
        raise _Missing()
    critical = available <= 0
    return _same_bool(critical, cond.value), critical


def _material_stock_delta_gte(cond, ctx, now):
    delta = _num(ctx.payload.get("quantity"))
    if delta is None:
        raise _Missing()
    return delta >= _threshold(cond), delta


def _invoice_total(ctx: AutomationContext) -> Optional[float]:
    if not ctx.invoice:
        return None
    total = _num(ctx.invoice.get("total_cents"))
    return total if total is not None else _num(ctx.invoice.get("amount_cents"))


def _invoice_total_gte(cond, ctx, now):
    amount = _first_num(ctx.payload, "amountCents", "total")
    if amount is None:
        amount = _invoice_total(ctx)
    if amount is None:
        raise _Missing()
    return amount >= _threshold(cond), amount


def _invoice_is_overdue(cond, ctx, now):
    overdue = _first_bool(ctx.payload, "isOverdue", "overdue")
    if overdue is None:
        if not ctx.invoice or not ctx.invoice.get("status"):
            raise _Missing()
        status = str(ctx.invoice["status"]).lower()
        due_at = as_utc(ctx.invoice.get("due_at"))
        overdue = bool(due_at and due_at < now and status not in ("paid", "void"))
    return _same_bool(overdue, cond.value), overdue


def _invoice_customer_type_equals(cond, ctx, now):
    customer_type = _first_str(ctx.payload, "customerType", "customer_type")
    if not customer_type:
        raise _Missing()
    return customer_type == cond.value, customer_type


def _payment_amount_gte(cond, ctx, now):
    amount = _first_num(ctx.payload, "amountCents", "amount")
    if amount is None and ctx.payment:
        amount = _num(ctx.payment.get("amount_cents"))
    if amount is None:
        raise _Missing()
    return amount >= _threshold(cond), amount


def _payment_method_equals(cond, ctx, now):
    method = _first_str(ctx.payload, "method", "paymentMethod", "payment_method")
    if not method:
        raise _Missing()
    return method == cond.value, method


def _invoice_is_fully_paid(cond, ctx, now):
    paid = _first_bool(ctx.payload, "isFullyPaid", "is_fully_paid", "paid")
    if paid is None:
        if not ctx.invoice:
            raise _Missing()
        paid = bool(ctx.invoice.get("paid_at") or str(ctx.invoice.get("status") or "").lower() == "paid")
    return _same_bool(paid, cond.value), paid


def _time_local_hour_equals(cond, ctx, now):
    tz_name = ctx.org_settings.get("timezone") if ctx.org_settings else None
    hour = _local_hour(now, tz_name)
    return _num(cond.value) == hour, hour


def _job_overdue_exists(cond, ctx, now):
    exists = bool(ctx.computed.get("overdue_jobs_exist"))
    return _same_bool(exists, cond.value), exists


def _material_stock_low_exists(cond, ctx, now):
    exists = bool(ctx.computed.get("low_stock_exists"))
    return _same_bool(exists, cond.value), exists


PREDICATES: dict[str, Callable[[RuleCondition, AutomationContext, datetime.datetime], tuple]] = {
    "job.type_equals": _job_type_equals,
    "job.priority_equals": _job_priority_equals,
    "job.has_tag": _job_has_tag,
    "job.is_assigned": _job_is_assigned,
    "job.assigned_to_crew": _job_assigned_to_crew,
    "job.assigned_to_any": _job_is_assigned,
    "job.scheduled_within_hours": _scheduled_within_hours,
    "job.rescheduled_within_hours": _scheduled_within_hours,
    "job.new_status_equals": _job_new_status_equals,
    "job.previous_status_equals": _job_previous_status_equals,
    "job.progress_gte": _job_progress,
    "job.progress_lte": _job_progress,
    "job.was_paid": _job_was_paid,
    "job.photo_count_gte": _job_photo_count_gte,
    "job.note_contains": _job_note_contains,
    "material.stock_below": _material_stock_below,
    "material.category_equals": _material_category_equals,
    "material.is_critical": _material_is_critical,
    "material.stock_delta_gte": _material_stock_delta_gte,
    "invoice.total_gte": _invoice_total_gte,
    "invoice.is_overdue": _invoice_is_overdue,
    "invoice.customer_type_equals": _invoice_customer_type_equals,
    "payment.amount_gte": _payment_amount_gte,
    "payment.method_equals": _payment_method_equals,
    "invoice.is_fully_paid": _invoice_is_fully_paid,
    "time.local_hour_equals": _time_local_hour_equals,
    "job.overdue_exists": _job_overdue_exists,
    "material.stock_low_exists": _material_stock_low_exists,
}


def _has_billing_reference(ctx: AutomationContext) -> bool:
    if ctx.job is not None:
        return True
    return any(_first_str(ctx.payload, key) for key in ("jobId", "paymentId", "invoiceId"))


def _context_available(definition, ctx: AutomationContext) -> bool:
    if definition.requires_job_context and ctx.job is None:
        return False
    if definition.requires_material_context and ctx.material is None:
        return False
    if definition.requires_billing_context and not _has_billing_reference(ctx):
        return False
    return True


def evaluate_rule_conditions(
    trigger_key: str,
    conditions: Sequence[RuleCondition],
    event: Any,
    context: AutomationContext,
    now: Optional[datetime.datetime] = None,
) -> RuleEvaluation:
    """
    Evaluate `conditions` in order against `context`.

    `event` is accepted for callers holding the raw event row; all payload
    reads go through `context.event`, which is the same event frozen.
    `matched` is true iff every recorded condition passed and no error
    occurred; an empty condition list matches.
    """
    now = as_utc(now) or context.now
    results: list[dict] = []
    error: Optional[str] = None

    for condition in conditions:
        definition = get_condition_definition(condition.key)
        predicate = PREDICATES.get(condition.key)
        evaluated: Any = None
        if definition is None or predicate is None or not _context_available(definition, context):
            error = CONTEXT_MISSING
        else:
            try:
                passed, evaluated = predicate(condition, context, now)
            except _Missing as exc:
                error = CONTEXT_MISSING
                evaluated = exc.evaluated
            except (TypeError, ValueError):
                logger.warning("Condition %s has an unusable value %r", condition.key, condition.value)
                passed = False

        if error:
            logger.error(
                "Condition context missing trigger=%s condition=%s event=%s",
                trigger_key, condition.key, context.event.id,
            )
            results.append({
                "condition": condition.model_dump(exclude_none=True),
                "passed": False,
                "evaluated_value": evaluated,
            })
            break

        results.append({
            "condition": condition.model_dump(exclude_none=True),
            "passed": bool(passed),
            "evaluated_value": evaluated,
        })

    matched = error is None and all(r["passed"] for r in results)
    payment_status = normalize_payment_status(context.payment.get("status")) if context.payment else None

    return RuleEvaluation(
        matched=matched,
        match_details={"conditions": results},
        error=error,
        payment_status=payment_status,
    )
