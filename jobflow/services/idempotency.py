"""
Event-type/trigger mapping and idempotency keys for automation runs.

The entity id describes the logical occurrence a run stands for. It is
coarser than the raw event for some triggers: progress updates collapse
per 5-point bucket and daily time events collapse per UTC day. The final
key hashes `org:rule:entity` and is stored under a unique constraint.
"""

from __future__ import annotations

import datetime
import hashlib
import math
from typing import Any, Mapping, Optional

from .automation_context import iso_utc
from .condition_catalog import TRIGGER_KEYS


EVENT_TYPE_TO_TRIGGER: dict[str, str] = {
    "job.status.updated": "job.status_updated",
    "job.progress.updated": "job.progress_updated",
    "job.photos.added": "job.photo_added",
    "job.notes.updated": "job.notes_updated",
    "material.stock.low": "material.stock_low",
    "material.stock.updated": "material.stock_updated",
}

TRIGGER_TO_EVENT_TYPE: dict[str, str] = {v: k for k, v in EVENT_TYPE_TO_TRIGGER.items()}

_BILLING_TRIGGERS = frozenset(
    {"payment.received", "payment.recorded", "invoice.sent", "invoice.issued", "invoice.paid", "invoice.overdue"}
)


def resolve_trigger_key(event_type: str) -> Optional[str]:
    if event_type in TRIGGER_KEYS:
        return event_type
    return EVENT_TYPE_TO_TRIGGER.get(event_type)


def resolve_event_type_for_trigger(trigger_key: str) -> str:
    return TRIGGER_TO_EVENT_TYPE.get(trigger_key, trigger_key)


def progress_bucket(percent: Any) -> int:
    """Nearest multiple of 5, halves rounding up, clamped to 0..100."""
    if isinstance(percent, bool) or not isinstance(percent, (int, float)) or not math.isfinite(percent):
        return 0
    bucket = math.floor(percent / 5 + 0.5) * 5
    return max(0, min(100, bucket))


def _timestamp(value: Any) -> str:
    if isinstance(value, datetime.datetime):
        return iso_utc(value)
    if isinstance(value, str) and value:
        try:
            return iso_utc(datetime.datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    return iso_utc(datetime.datetime.now(datetime.timezone.utc))


def build_event_entity_id(
    trigger_key: str,
    payload: Mapping[str, Any],
    event_created_at: Any = None,
) -> str:
    provided = payload.get("entityId")
    if isinstance(provided, str) and provided:
        return provided

    def _s(key: str) -> str:
        value = payload.get(key)
        return value if isinstance(value, str) else ""

    job_id = _s("jobId")
    material_id = _s("materialId")
    assignment_id = _s("assignmentId")
    created_at = _timestamp(event_created_at)

    if trigger_key == "job.status_updated":
        return f"{job_id}:{_s('status')}:{created_at}"
    if trigger_key == "job.progress_updated":
        return f"{job_id}:progress:{progress_bucket(payload.get('progressPercent'))}"
    if trigger_key in ("job.assigned", "job.rescheduled"):
        return f"{assignment_id or job_id}:{created_at}"
    if trigger_key in ("material.stock_low", "material.stock_updated"):
        return f"{material_id}:{created_at}"
    if trigger_key in _BILLING_TRIGGERS:
        return f"{job_id}:{created_at}"
    if trigger_key == "time.daily":
        return f"{trigger_key}:{created_at[:10]}"
    return f"{job_id or material_id or assignment_id or trigger_key}:{created_at}"


def build_idempotency_key(org_id: str, rule_id: str, event_entity_id: str) -> str:
    raw = f"{org_id}:{rule_id}:{event_entity_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
