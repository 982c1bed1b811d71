"""
API endpoint for recording app events and running automations on them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db, get_session_factory
from ...models.app_event import AppEvent
from ...schemas.app_event import AppEventCreate, AppEventOut, AppEventRecorded
from ...schemas.automation_run import RunOutcomeOut
from ...services.automation_engine import process_automation_event
from ...services.event_ingest import mark_event_processed, record_app_event


router = APIRouter(prefix="/api/v1/automations/events", tags=["automations"])


@router.post("", response_model=AppEventRecorded, status_code=201)
def create_app_event(
    payload: AppEventCreate,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    user: UserContext = Depends(get_current_user),
) -> AppEventRecorded:
    event = record_app_event(
        db,
        user.org_id,
        payload.event_type,
        payload.payload,
        actor_user_id=user.user_id,
        created_at=payload.occurred_at,
    )
    event_id = event.id
    outcomes = []
    if payload.process:
        outcomes = process_automation_event(user.org_id, event_id, session_factory=session_factory)
        mark_event_processed(db, event_id)

    db.expire_all()
    event = db.get(AppEvent, event_id)
    return AppEventRecorded(
        event=AppEventOut.model_validate(event),
        outcomes=[RunOutcomeOut.model_validate(o) for o in outcomes],
    )
