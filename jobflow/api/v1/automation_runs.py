"""
API endpoints for automation run history.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.errors import AutomationError
from ...core.pagination import clamp_limit, set_pagination_headers
from ...models.automation_run import RUN_STATUSES
from ...schemas.automation_run import RunDetailOut, RunOut, RunStepOut
from ...services.automation_runs import get_run, list_runs
from ..errors import http_error


router = APIRouter(prefix="/api/v1/automations/runs", tags=["automations"])


@router.get("", response_model=List[RunOut])
def list_automation_runs(
    response: Response,
    rule_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> List[RunOut]:
    if status is not None and status not in RUN_STATUSES:
        return []
    limit = clamp_limit(limit)
    rows, total = list_runs(db, user.org_id, rule_id=rule_id, status=status, limit=limit, offset=offset)
    set_pagination_headers(response, total=total, limit=limit, offset=offset)
    return [RunOut.model_validate(r) for r in rows]


@router.get("/{run_id}", response_model=RunDetailOut)
def get_automation_run(
    run_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> RunDetailOut:
    try:
        run, steps = get_run(db, user.org_id, run_id)
    except AutomationError as exc:
        raise http_error(exc)
    out = RunDetailOut.model_validate(run)
    out.steps = [RunStepOut.model_validate(s) for s in steps]
    return out
