"""
Pydantic schemas for automation run history.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class RunStepOut(BaseModel):
    id: str
    step_index: int
    action_type: str
    action_input: dict
    status: str
    result: Optional[dict] = None
    comm_preview: Optional[dict] = None
    error: Optional[str] = None
    error_details: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RunOut(BaseModel):
    id: str
    org_id: str
    rule_id: str
    event_id: str
    event_key: str
    event_entity_id: str
    matched: bool
    match_details: dict
    status: str
    rate_limited: bool
    error: Optional[str] = None
    error_details: Optional[dict] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RunDetailOut(RunOut):
    event_payload: dict
    steps: List[RunStepOut] = []


class RunOutcomeOut(BaseModel):
    rule_id: str
    run_id: Optional[str] = None
    created: bool
    status: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
