"""
API endpoints for authoring and testing automation rules.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user, require_org_admin
from ...core.db import get_db
from ...core.errors import AutomationError
from ...core.pagination import clamp_limit, set_pagination_headers
from ...schemas.automation_rule import (
    AutomationRuleCreate,
    AutomationRuleOut,
    AutomationRuleUpdate,
    ConditionDefinitionOut,
    DryRunOut,
    DryRunRequest,
    EnableRuleRequest,
    RuleSummaryOut,
    RuleTestRequest,
)
from ...services import automation_rules as rules_service
from ...services.automation_runs import rule_summary
from ...services.condition_catalog import (
    CONDITION_DEFINITIONS_BY_KEY,
    ENUM_SOURCES,
    TRIGGER_KEYS,
    conditions_for_trigger,
    resolve_enum_values,
)
from ..errors import http_error


router = APIRouter(prefix="/api/v1/automations", tags=["automations"])


@router.get("/triggers", response_model=List[str])
def list_triggers() -> List[str]:
    return list(TRIGGER_KEYS)


@router.get("/conditions", response_model=List[ConditionDefinitionOut])
def list_conditions(trigger_key: Optional[str] = Query(None)) -> List[ConditionDefinitionOut]:
    if trigger_key is None:
        definitions = CONDITION_DEFINITIONS_BY_KEY.values()
    elif trigger_key in TRIGGER_KEYS:
        definitions = conditions_for_trigger(trigger_key)
    else:
        raise HTTPException(status_code=404, detail="Unknown trigger")
    return [ConditionDefinitionOut.model_validate(d.to_dict()) for d in definitions]


@router.get("/conditions/enum-values", response_model=List[dict])
def list_enum_values(
    source: str = Query(...),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> List[dict]:
    if source not in ENUM_SOURCES:
        raise HTTPException(status_code=404, detail="Unknown enum source")
    return resolve_enum_values(db, user.org_id, source)


@router.get("/rules", response_model=List[AutomationRuleOut])
def list_rules(
    response: Response,
    trigger_key: Optional[str] = Query(None),
    enabled: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> List[AutomationRuleOut]:
    limit = clamp_limit(limit)
    rows, total = rules_service.list_rules(
        db, user.org_id, trigger_key=trigger_key, enabled=enabled, limit=limit, offset=offset
    )
    set_pagination_headers(response, total=total, limit=limit, offset=offset)
    return [AutomationRuleOut.model_validate(r) for r in rows]


@router.post("/rules", response_model=AutomationRuleOut, status_code=201)
def create_rule(
    payload: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> AutomationRuleOut:
    try:
        row = rules_service.create_rule(db, user.org_id, payload, user_id=user.user_id)
    except AutomationError as exc:
        raise http_error(exc)
    return AutomationRuleOut.model_validate(row)


@router.get("/rules/{rule_id}", response_model=AutomationRuleOut)
def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> AutomationRuleOut:
    try:
        row = rules_service.get_rule(db, user.org_id, rule_id)
    except AutomationError as exc:
        raise http_error(exc)
    return AutomationRuleOut.model_validate(row)


@router.patch("/rules/{rule_id}", response_model=AutomationRuleOut)
def update_rule(
    rule_id: str,
    payload: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> AutomationRuleOut:
    changes = payload.model_dump(exclude_unset=True)
    try:
        row = rules_service.update_rule(db, user.org_id, rule_id, changes, user_id=user.user_id)
    except AutomationError as exc:
        raise http_error(exc)
    return AutomationRuleOut.model_validate(row)


@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> Response:
    try:
        rules_service.delete_rule(db, user.org_id, rule_id, user_id=user.user_id)
    except AutomationError as exc:
        raise http_error(exc)
    return Response(status_code=204)


@router.post("/rules/{rule_id}/enable", response_model=AutomationRuleOut)
def enable_rule(
    rule_id: str,
    payload: Optional[EnableRuleRequest] = Body(None),
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> AutomationRuleOut:
    payload = payload or EnableRuleRequest()
    try:
        row = rules_service.enable_rule(
            db,
            user.org_id,
            rule_id,
            confirmed_customer_facing=payload.confirmed_customer_facing,
            user_id=user.user_id,
        )
    except AutomationError as exc:
        raise http_error(exc)
    return AutomationRuleOut.model_validate(row)


@router.post("/rules/{rule_id}/disable", response_model=AutomationRuleOut)
def disable_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> AutomationRuleOut:
    try:
        row = rules_service.disable_rule(db, user.org_id, rule_id, user_id=user.user_id)
    except AutomationError as exc:
        raise http_error(exc)
    return AutomationRuleOut.model_validate(row)


@router.post("/rules/{rule_id}/dry-run", response_model=DryRunOut)
def dry_run_rule(
    rule_id: str,
    payload: Optional[DryRunRequest] = Body(None),
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> DryRunOut:
    try:
        return rules_service.dry_run_rule(db, user.org_id, rule_id, payload, user_id=user.user_id)
    except AutomationError as exc:
        raise http_error(exc)


@router.get("/rules/{rule_id}/summary", response_model=RuleSummaryOut)
def get_rule_summary(
    rule_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> RuleSummaryOut:
    try:
        return rule_summary(db, user.org_id, rule_id)
    except AutomationError as exc:
        raise http_error(exc)


@router.post("/test", response_model=DryRunOut)
def dry_run_rule_draft(
    payload: RuleTestRequest,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_org_admin),
) -> DryRunOut:
    try:
        return rules_service.dry_run_draft(db, user.org_id, payload, user_id=user.user_id)
    except AutomationError as exc:
        raise http_error(exc)
