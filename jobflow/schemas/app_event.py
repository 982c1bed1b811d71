"""
Pydantic schemas for recording app events.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .automation_run import RunOutcomeOut


class AppEventCreate(BaseModel):
    event_type: str = Field(min_length=1, max_length=64, alias="eventType")
    payload: dict = Field(default_factory=dict)
    occurred_at: Optional[datetime] = Field(default=None, alias="occurredAt")
    # Run the engine inline instead of leaving the event to the worker.
    process: bool = True

    model_config = ConfigDict(populate_by_name=True)


class AppEventOut(BaseModel):
    id: str
    org_id: str
    event_type: str
    payload: dict
    actor_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    automation_processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AppEventRecorded(BaseModel):
    event: AppEventOut
    outcomes: List[RunOutcomeOut] = []
