"""
App event ingestion and the automation polling loop helpers.

Domain code records events with `record_app_event`. The worker drains
events whose `automation_processed_at` is still empty, hands each one to
the automation engine, and emits one `time.daily` event per org per UTC day.
Delivery is at-least-once: an event may be handed over again after a crash,
and the engine's idempotency keys absorb the repeat.
"""

from __future__ import annotations

import datetime
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.db import SessionLocal
from ..core.errors import log_exception
from ..models.app_event import AppEvent
from ..models.org import Org
from .automation_context import as_utc
from .automation_engine import RuleRunOutcome, process_automation_event
from .communications import CommunicationsGateway


logger = logging.getLogger("event_ingest")

DAILY_EVENT_TYPE = "time.daily"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def record_app_event(
    db: Session,
    org_id: str,
    event_type: str,
    payload: Optional[dict] = None,
    *,
    actor_user_id: Optional[str] = None,
    created_at: Optional[datetime.datetime] = None,
) -> AppEvent:
    event = AppEvent(
        org_id=org_id,
        event_type=event_type,
        payload=dict(payload or {}),
        actor_user_id=actor_user_id,
        created_at=as_utc(created_at) or _utcnow(),
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.debug("App event recorded org=%s type=%s id=%s", org_id, event_type, event.id)
    return event


def list_pending_events(db: Session, *, limit: int = 100) -> list[AppEvent]:
    return (
        db.query(AppEvent)
        .filter(AppEvent.automation_processed_at.is_(None))
        .order_by(AppEvent.created_at.asc(), AppEvent.id.asc())
        .limit(limit)
        .all()
    )


def mark_event_processed(db: Session, event_id: str, *, now: Optional[datetime.datetime] = None) -> None:
    event = db.get(AppEvent, event_id)
    if event is None:
        return
    event.automation_processed_at = as_utc(now) or _utcnow()
    db.commit()


def emit_daily_time_events(db: Session, *, now: Optional[datetime.datetime] = None) -> list[AppEvent]:
    """Record today's `time.daily` event for every org that does not have one yet."""
    now = as_utc(now) or _utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day = day_start.date().isoformat()

    already = {
        org_id
        for (org_id,) in db.query(AppEvent.org_id)
        .filter(AppEvent.event_type == DAILY_EVENT_TYPE, AppEvent.created_at >= day_start)
        .distinct()
        .all()
    }
    created: list[AppEvent] = []
    for (org_id,) in db.query(Org.id).order_by(Org.id.asc()).all():
        if org_id in already:
            continue
        created.append(record_app_event(db, org_id, DAILY_EVENT_TYPE, {"date": day}, created_at=now))
    if created:
        logger.info("Emitted %s daily time event(s) for %s", len(created), day)
    return created


def process_pending_events(
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    limit: int = 100,
    comms: Optional[CommunicationsGateway] = None,
    now: Optional[datetime.datetime] = None,
    max_workers: Optional[int] = None,
) -> dict[str, list[RuleRunOutcome]]:
    """
    Run the engine for one batch of unprocessed events. An event is marked
    processed even when a rule fails; rule failures are recorded on runs.
    """
    session_factory = session_factory or SessionLocal
    with session_factory() as db:
        pending = [(event.id, event.org_id) for event in list_pending_events(db, limit=limit)]

    results: dict[str, list[RuleRunOutcome]] = {}
    for event_id, org_id in pending:
        try:
            results[event_id] = process_automation_event(
                org_id,
                event_id,
                session_factory=session_factory,
                comms=comms,
                now=now,
                max_workers=max_workers,
            )
        except Exception as exc:
            log_exception(logger, "Automation event processing failed", exc=exc, extra={"event_id": event_id})
            continue
        with session_factory() as db:
            mark_event_processed(db, event_id, now=now)
    return results
