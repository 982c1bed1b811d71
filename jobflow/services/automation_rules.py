"""
Rule authoring operations: create, update, enable, disable, delete and
dry-run tests of saved rules and unsaved drafts.

The engine never mutates rules; every change here is audited.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import RuleNotFoundError, RuleValidationError
from ..models.app_event import AppEvent
from ..models.automation_rule import AutomationRule
from ..models.automation_run import AutomationRuleRun, AutomationRuleRunStep
from ..schemas.automation_rule import (
    AutomationRuleOut,
    DryRunOut,
    DryRunRequest,
    RuleTestRequest,
    dump_actions,
    dump_conditions,
)
from .audit import record_audit_event
from .automation_context import as_utc
from .automation_engine import NormalizedRule, run_rule_dry_run
from .communications import CommunicationsGateway
from .idempotency import resolve_event_type_for_trigger, resolve_trigger_key
from .rule_validation import ValidatedRule, validate_rule_for_enable, validate_rule_for_save


logger = logging.getLogger("automation_rules")

NO_EVENTS_AVAILABLE = "No recent events available. Provide a sample payload to test this trigger."
NO_EVENTS_FOUND = "No recent events found. Provide a sample payload to test this trigger."


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def rule_definition(row: AutomationRule) -> dict:
    return {
        "name": row.name,
        "description": row.description,
        "trigger_key": row.trigger_key,
        "trigger_version": row.trigger_version or 1,
        "conditions": list(row.conditions or []),
        "actions": list(row.actions or []),
    }


def rule_snapshot(row: AutomationRule) -> dict:
    return AutomationRuleOut.model_validate(row).model_dump(mode="json")


def _apply_definition(row: AutomationRule, validated: ValidatedRule) -> None:
    rule = validated.rule
    row.name = rule.name
    row.description = rule.description
    row.trigger_key = rule.trigger_key
    row.trigger_version = rule.trigger_version
    row.conditions = dump_conditions(rule.conditions)
    row.actions = dump_actions(rule.actions)
    row.is_customer_facing = validated.flags.is_customer_facing
    row.requires_sms = validated.flags.requires_sms
    row.requires_email = validated.flags.requires_email


def get_rule(db: Session, org_id: str, rule_id: str) -> AutomationRule:
    row = (
        db.query(AutomationRule)
        .filter(AutomationRule.org_id == org_id, AutomationRule.id == rule_id)
        .first()
    )
    if row is None:
        raise RuleNotFoundError("Automation rule not found")
    return row


def list_rules(
    db: Session,
    org_id: str,
    *,
    trigger_key: Optional[str] = None,
    enabled: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AutomationRule], int]:
    query = db.query(AutomationRule).filter(AutomationRule.org_id == org_id)
    if trigger_key:
        query = query.filter(AutomationRule.trigger_key == trigger_key)
    if enabled is not None:
        query = query.filter(AutomationRule.enabled.is_(enabled))
    total = query.count()
    rows = (
        query.order_by(AutomationRule.created_at.desc(), AutomationRule.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def create_rule(
    db: Session,
    org_id: str,
    data: Any,
    *,
    user_id: Optional[str] = None,
    last_tested_at: Optional[datetime.datetime] = None,
) -> AutomationRule:
    """Validate and store a new rule. New rules always start disabled."""
    validated = validate_rule_for_save(db, org_id, data)
    row = AutomationRule(
        id=str(uuid.uuid4()),
        org_id=org_id,
        enabled=False,
        created_by=user_id,
        updated_by=user_id,
        last_tested_at=last_tested_at,
    )
    _apply_definition(row, validated)
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("Automation rule created org=%s rule=%s trigger=%s", org_id, row.id, row.trigger_key)
    record_audit_event(
        db,
        org_id=org_id,
        actor_user_id=user_id,
        actor_type="user",
        action="CREATE",
        entity_type="automation_rule",
        entity_id=row.id,
        after=rule_snapshot(row),
        metadata={"rule_name": row.name, "trigger_key": row.trigger_key},
    )
    return row


def update_rule(
    db: Session,
    org_id: str,
    rule_id: str,
    changes: dict,
    *,
    user_id: Optional[str] = None,
) -> AutomationRule:
    """
    Apply a partial update. Changing the trigger, conditions or actions
    disables the rule and clears its last test, so it must be re-tested
    before it can be enabled again.
    """
    row = get_rule(db, org_id, rule_id)
    before = rule_snapshot(row)
    merged = rule_definition(row)
    merged.update({k: v for k, v in changes.items() if k in merged})

    validated = validate_rule_for_save(db, org_id, merged)
    structural_change = (
        dump_conditions(validated.rule.conditions) != list(row.conditions or [])
        or dump_actions(validated.rule.actions) != list(row.actions or [])
        or validated.rule.trigger_key != row.trigger_key
    )

    _apply_definition(row, validated)
    if structural_change:
        row.enabled = False
        row.last_tested_at = None
    row.updated_by = user_id
    row.updated_at = _utcnow()
    db.commit()
    db.refresh(row)

    record_audit_event(
        db,
        org_id=org_id,
        actor_user_id=user_id,
        actor_type="user",
        action="UPDATE",
        entity_type="automation_rule",
        entity_id=row.id,
        before=before,
        after=rule_snapshot(row),
        metadata={"structural_change": structural_change},
    )
    return row


def _require_recent_test(row: AutomationRule, now: datetime.datetime) -> None:
    if not settings.automation_enable_requires_test:
        return
    tested_at = as_utc(row.last_tested_at)
    if tested_at is None:
        raise RuleValidationError("Rule has not been tested recently", details={"reason": "not_tested"})
    window = settings.automation_test_window_minutes
    if tested_at < now - datetime.timedelta(minutes=window):
        raise RuleValidationError(
            f"Dry-run test must be within the last {window} minutes", details={"reason": "test_stale"}
        )


def enable_rule(
    db: Session,
    org_id: str,
    rule_id: str,
    *,
    confirmed_customer_facing: bool = False,
    user_id: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> AutomationRule:
    now = as_utc(now) or _utcnow()
    row = get_rule(db, org_id, rule_id)
    before = rule_snapshot(row)
    _require_recent_test(row, now)
    validated = validate_rule_for_enable(
        db, org_id, rule_definition(row), confirmed_customer_facing=confirmed_customer_facing
    )

    _apply_definition(row, validated)
    row.enabled = True
    row.last_enabled_at = now
    row.updated_by = user_id
    row.updated_at = now
    db.commit()
    db.refresh(row)
    logger.info("Automation rule enabled org=%s rule=%s", org_id, row.id)

    record_audit_event(
        db,
        org_id=org_id,
        actor_user_id=user_id,
        actor_type="user",
        action="UPDATE",
        entity_type="automation_rule",
        entity_id=row.id,
        before=before,
        after=rule_snapshot(row),
        metadata={"action": "enable", "confirmed_customer_facing": confirmed_customer_facing},
    )
    return row


def disable_rule(db: Session, org_id: str, rule_id: str, *, user_id: Optional[str] = None) -> AutomationRule:
    row = get_rule(db, org_id, rule_id)
    before = rule_snapshot(row)
    row.enabled = False
    row.updated_by = user_id
    row.updated_at = _utcnow()
    db.commit()
    db.refresh(row)
    logger.info("Automation rule disabled org=%s rule=%s", org_id, row.id)

    record_audit_event(
        db,
        org_id=org_id,
        actor_user_id=user_id,
        actor_type="user",
        action="UPDATE",
        entity_type="automation_rule",
        entity_id=row.id,
        before=before,
        after=rule_snapshot(row),
        metadata={"action": "disable"},
    )
    return row


def delete_rule(db: Session, org_id: str, rule_id: str, *, user_id: Optional[str] = None) -> None:
    row = get_rule(db, org_id, rule_id)
    before = rule_snapshot(row)
    # SQLite does not enforce the ON DELETE CASCADE without the foreign_keys pragma
    run_ids = db.query(AutomationRuleRun.id).filter(AutomationRuleRun.rule_id == row.id)
    db.query(AutomationRuleRunStep).filter(AutomationRuleRunStep.run_id.in_(run_ids.scalar_subquery())).delete(
        synchronize_session=False
    )
    db.query(AutomationRuleRun).filter(AutomationRuleRun.rule_id == row.id).delete(synchronize_session=False)
    db.delete(row)
    db.commit()
    record_audit_event(
        db,
        org_id=org_id,
        actor_user_id=user_id,
        actor_type="user",
        action="DELETE",
        entity_type="automation_rule",
        entity_id=rule_id,
        before=before,
    )


# Dry-run

def select_sample_event(
    db: Session,
    org_id: str,
    trigger_key: str,
    *,
    event_id: Optional[str] = None,
    payload: Optional[dict] = None,
    actor_user_id: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> AppEvent:
    """
    Pick the event a dry-run is evaluated against: a stored event by id, an
    unsaved event built from `payload`, or the org's latest event for the
    trigger. Inline events are never added to the session.
    """
    event_type = resolve_event_type_for_trigger(trigger_key)

    if event_id:
        event = db.query(AppEvent).filter(AppEvent.org_id == org_id, AppEvent.id == event_id).first()
        if event is None:
            raise RuleNotFoundError("Sample event not found")
        if resolve_trigger_key(event.event_type) != trigger_key:
            raise RuleValidationError("Sample event does not match the rule trigger")
        return event

    if payload is not None:
        return AppEvent(
            id=str(uuid.uuid4()),
            org_id=org_id,
            event_type=event_type,
            payload=dict(payload),
            actor_user_id=actor_user_id,
            created_at=as_utc(now) or _utcnow(),
        )

    if trigger_key == "time.daily":
        raise RuleNotFoundError(NO_EVENTS_AVAILABLE)

    event = (
        db.query(AppEvent)
        .filter(AppEvent.org_id == org_id, AppEvent.event_type.in_({event_type, trigger_key}))
        .order_by(AppEvent.created_at.desc())
        .first()
    )
    if event is None:
        raise RuleNotFoundError(NO_EVENTS_FOUND)
    return event


def _dry_run(
    db: Session,
    org_id: str,
    rule: NormalizedRule,
    validated: ValidatedRule,
    *,
    event_id: Optional[str],
    payload: Optional[dict],
    user_id: Optional[str],
    comms: Optional[CommunicationsGateway],
    now: datetime.datetime,
) -> tuple[DryRunOut, AppEvent]:
    event = select_sample_event(
        db, org_id, rule.trigger_key, event_id=event_id, payload=payload, actor_user_id=user_id, now=now
    )
    result = run_rule_dry_run(db, org_id, rule, event, comms=comms, now=now)
    if result.error:
        raise RuleValidationError(result.error, details={"match_details": result.match_details})

    out = DryRunOut(
        matched=result.matched,
        match_details=result.match_details,
        action_previews=result.action_previews,
        warnings=list(validated.warnings) + result.warnings,
        sample_event_id=event.id if event_id or payload is None else None,
        rule_id=rule.id,
    )
    return out, event


def dry_run_rule(
    db: Session,
    org_id: str,
    rule_id: str,
    request: Optional[DryRunRequest] = None,
    *,
    user_id: Optional[str] = None,
    comms: Optional[CommunicationsGateway] = None,
    now: Optional[datetime.datetime] = None,
) -> DryRunOut:
    """Dry-run a saved rule and stamp `last_tested_at` on success."""
    request = request or DryRunRequest()
    now = as_utc(now) or _utcnow()
    row = get_rule(db, org_id, rule_id)
    validated = validate_rule_for_save(db, org_id, rule_definition(row))
    rule = NormalizedRule.from_draft(row.id, validated.rule)

    out, _ = _dry_run(
        db,
        org_id,
        rule,
        validated,
        event_id=request.event_id,
        payload=request.payload,
        user_id=user_id,
        comms=comms,
        now=now,
    )

    row.last_tested_at = now
    row.updated_by = user_id
    row.updated_at = now
    db.commit()
    return out


def dry_run_draft(
    db: Session,
    org_id: str,
    request: RuleTestRequest,
    *,
    user_id: Optional[str] = None,
    comms: Optional[CommunicationsGateway] = None,
    now: Optional[datetime.datetime] = None,
) -> DryRunOut:
    """
    Dry-run an unsaved draft. With `persist_draft` the draft is stored as a
    disabled rule already stamped as tested.
    """
    now = as_utc(now) or _utcnow()
    validated = validate_rule_for_save(db, org_id, request.rule)
    rule = NormalizedRule.from_draft("draft", validated.rule)

    out, _ = _dry_run(
        db,
        org_id,
        rule,
        validated,
        event_id=request.event_id,
        payload=request.payload,
        user_id=user_id,
        comms=comms,
        now=now,
    )
    out.rule_id = None

    if request.persist_draft:
        row = create_rule(db, org_id, validated.rule, user_id=user_id, last_tested_at=now)
        out.rule_id = row.id
    return out
