"""
Automation rule engine: matches app events to enabled rules and runs them.

Per rule the engine:
1) derives the logical-occurrence idempotency key,
2) inserts the run with ON CONFLICT DO NOTHING (first writer wins),
3) resolves context and evaluates conditions,
4) applies the per-rule rate limit,
5) executes actions in order and finalizes the run status.

Rules for one event are independent: each is processed in its own session
(concurrently on a thread pool) and a failure in one never affects another.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.db import SessionLocal
from ..core.errors import RuleValidationError, error_details, log_exception
from ..models.app_event import AppEvent
from ..models.automation_rule import AutomationRule
from ..models.automation_run import AutomationRuleRun
from ..models.org import OrgSettings
from .action_executor import RuleExecutionContext, build_action_previews, execute_rule_actions
from .automation_context import ContextResolver, as_utc, resolve_automation_context
from .communications import CommunicationsGateway
from .condition_catalog import JOB_CONTEXT_TRIGGERS, MATERIAL_CONTEXT_TRIGGERS
from .condition_evaluator import evaluate_rule_conditions
from .idempotency import build_event_entity_id, build_idempotency_key, resolve_trigger_key
from .rule_rate_limit import check_rule_rate_limit
from .rule_validation import derive_rule_flags, provider_warnings, validate_rule_definition


logger = logging.getLogger("automation_engine")

JOB_CONTEXT_MISSING = "Job context is required but jobId is missing."
MATERIAL_CONTEXT_MISSING = "Material context is required but materialId is missing."


@dataclass(frozen=True)
class NormalizedRule:
    id: str
    name: str
    trigger_key: str
    trigger_version: int
    conditions: tuple
    actions: tuple

    @classmethod
    def from_row(cls, row: AutomationRule) -> "NormalizedRule":
        draft = validate_rule_definition(
            {
                "name": row.name,
                "description": row.description,
                "trigger_key": row.trigger_key,
                "trigger_version": row.trigger_version or 1,
                "conditions": row.conditions or [],
                "actions": row.actions or [],
            }
        )
        return cls.from_draft(row.id, draft)

    @classmethod
    def from_draft(cls, rule_id: str, draft: Any) -> "NormalizedRule":
        return cls(
            id=rule_id,
            name=draft.name,
            trigger_key=draft.trigger_key,
            trigger_version=draft.trigger_version,
            conditions=tuple(draft.conditions),
            actions=tuple(draft.actions),
        )


@dataclass
class RuleRunOutcome:
    rule_id: str
    run_id: Optional[str] = None
    created: bool = False
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DryRunResult:
    matched: bool
    match_details: dict = field(default_factory=lambda: {"conditions": []})
    action_previews: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "match_details": self.match_details,
            "action_previews": self.action_previews,
            "warnings": self.warnings,
            "error": self.error,
        }


def ensure_event_context(trigger_key: str, payload) -> Optional[str]:
    if trigger_key in JOB_CONTEXT_TRIGGERS and not isinstance(payload.get("jobId"), str):
        return JOB_CONTEXT_MISSING
    if trigger_key in MATERIAL_CONTEXT_TRIGGERS and not isinstance(payload.get("materialId"), str):
        return MATERIAL_CONTEXT_MISSING
    return None


def org_automations_disabled(db: Session, org_id: str) -> bool:
    row = db.get(OrgSettings, org_id)
    return bool(row.automations_disabled) if row else False


def insert_run_if_absent(db: Session, values: dict) -> bool:
    """Insert a run unless its idempotency key exists. Returns True when this call created it."""
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        stmt = (
            insert(AutomationRuleRun)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
        )
        result = db.execute(stmt)
        db.commit()
        return result.rowcount == 1

    db.add(AutomationRuleRun(**values))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _update_run(db: Session, run_id: str, **values: Any) -> None:
    run = db.get(AutomationRuleRun, run_id)
    for key, value in values.items():
        setattr(run, key, value)
    db.commit()


def _finish_run(db: Session, run_id: str, status: str, **values: Any) -> None:
    _update_run(db, run_id, status=status, finished_at=datetime.datetime.now(datetime.timezone.utc), **values)


def _process_rule(
    rule: NormalizedRule,
    *,
    org_id: str,
    event_id: str,
    trigger_key: str,
    session_factory: Callable[[], Session],
    resolver: ContextResolver,
    comms: CommunicationsGateway,
    now: datetime.datetime,
) -> RuleRunOutcome:
    outcome = RuleRunOutcome(rule_id=rule.id)
    db = session_factory()
    try:
        event = db.get(AppEvent, event_id)
        payload = dict(event.payload or {})
        entity_id = build_event_entity_id(trigger_key, payload, as_utc(event.created_at) or now)
        run_id = str(uuid.uuid4())

        created = insert_run_if_absent(
            db,
            {
                "id": run_id,
                "org_id": org_id,
                "rule_id": rule.id,
                "event_id": event.id,
                "event_key": trigger_key,
                "event_entity_id": entity_id,
                "event_payload": payload,
                "idempotency_key": build_idempotency_key(org_id, rule.id, entity_id),
                "matched": False,
                "match_details": {},
                "status": "queued",
                "rate_limited": False,
                "started_at": now,
                "created_at": now,
            },
        )
        if not created:
            logger.info("Duplicate occurrence rule=%s event=%s entity=%s; skipping", rule.id, event_id, entity_id)
            outcome.status = "duplicate"
            return outcome
        outcome.run_id = run_id
        outcome.created = True

        context_error = ensure_event_context(trigger_key, payload)
        if context_error:
            _finish_run(db, run_id, "failed", error=context_error, matched=False)
            outcome.status, outcome.error = "failed", context_error
            return outcome

        context = resolver(db, org_id, event, now=now)
        evaluation = evaluate_rule_conditions(trigger_key, rule.conditions, event, context, now=now)
        _update_run(db, run_id, matched=evaluation.matched, match_details=evaluation.match_details)

        if evaluation.error:
            _finish_run(db, run_id, "failed", error=evaluation.error, matched=False)
            outcome.status, outcome.error = "failed", evaluation.error
            return outcome

        if not evaluation.matched:
            _finish_run(db, run_id, "skipped")
            outcome.status = "skipped"
            return outcome

        limit = check_rule_rate_limit(db, org_id, rule.id, now)
        if limit.limited:
            logger.warning(
                "Rule rate limited rule=%s hourly=%s daily=%s",
                rule.id, limit.hourly_count, limit.daily_count,
            )
            _finish_run(db, run_id, "rate_limited", rate_limited=True)
            outcome.status = "rate_limited"
            return outcome

        _update_run(db, run_id, status="running", started_at=datetime.datetime.now(datetime.timezone.utc))
        result = execute_rule_actions(
            db,
            RuleExecutionContext(
                org_id=org_id,
                run_id=run_id,
                rule_id=rule.id,
                rule_name=rule.name,
                trigger_key=trigger_key,
                event=context.event,
                context=context,
            ),
            rule.actions,
            comms=comms,
        )
        if result.ok:
            _finish_run(db, run_id, "succeeded")
            outcome.status = "succeeded"
        else:
            _finish_run(db, run_id, "failed", error=result.error or "Action failed", error_details=result.error_details)
            outcome.status, outcome.error = "failed", result.error
        return outcome
    except Exception as exc:
        db.rollback()
        log_exception(
            logger,
            "Automation rule execution failed",
            exc=exc,
            extra={"org_id": org_id, "rule_id": rule.id, "event_id": event_id},
        )
        if outcome.created:
            try:
                _finish_run(db, outcome.run_id, "failed", error=str(exc) or "Automation rule failed", error_details=error_details(exc))
            except Exception as finish_exc:
                db.rollback()
                log_exception(logger, "Could not record rule failure", exc=finish_exc, extra={"run_id": outcome.run_id})
        outcome.status, outcome.error = "failed", str(exc)
        return outcome
    finally:
        db.close()


def process_automation_event(
    org_id: str,
    event_id: str,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    resolver: Optional[ContextResolver] = None,
    comms: Optional[CommunicationsGateway] = None,
    automations_disabled: Optional[bool] = None,
    now: Optional[datetime.datetime] = None,
    max_workers: Optional[int] = None,
) -> list[RuleRunOutcome]:
    """
    Process one app event against the org's enabled rules for its trigger.

    A missing event, an event type with no trigger, an org with automations
    disabled, or no enabled rules all return an empty list without writing.
    `automations_disabled` overrides the org setting when given.
    """
    session_factory = session_factory or SessionLocal
    resolver = resolver or resolve_automation_context
    comms = comms or CommunicationsGateway()
    now = as_utc(now) or datetime.datetime.now(datetime.timezone.utc)

    with session_factory() as db:
        event = db.query(AppEvent).filter(AppEvent.id == event_id, AppEvent.org_id == org_id).first()
        if event is None:
            logger.info("Event %s not found for org %s", event_id, org_id)
            return []

        trigger_key = resolve_trigger_key(event.event_type)
        if trigger_key is None:
            logger.debug("Event type %s has no automation trigger", event.event_type)
            return []

        disabled = automations_disabled if automations_disabled is not None else org_automations_disabled(db, org_id)
        if disabled:
            logger.info("Automations disabled for org %s; event %s ignored", org_id, event_id)
            return []

        rows = (
            db.query(AutomationRule)
            .filter(
                AutomationRule.org_id == org_id,
                AutomationRule.enabled.is_(True),
                AutomationRule.trigger_key == trigger_key,
            )
            .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
            .all()
        )
        rules: list[NormalizedRule] = []
        for row in rows:
            try:
                rules.append(NormalizedRule.from_row(row))
            except RuleValidationError as exc:
                logger.error("Invalid stored automation rule %s skipped: %s %s", row.id, exc.message, exc.details)

    if not rules:
        return []

    def _run(rule: NormalizedRule) -> RuleRunOutcome:
        return _process_rule(
            rule,
            org_id=org_id,
            event_id=event_id,
            trigger_key=trigger_key,
            session_factory=session_factory,
            resolver=resolver,
            comms=comms,
            now=now,
        )

    workers = min(max_workers or settings.automation_rule_workers, len(rules))
    if workers <= 1:
        outcomes = [_run(rule) for rule in rules]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="automation-rule") as pool:
            outcomes = list(pool.map(_run, rules))

    logger.info(
        "Processed event %s trigger=%s rules=%s outcomes=%s",
        event_id, trigger_key, len(rules), [o.status for o in outcomes],
    )
    return outcomes


def run_rule_dry_run(
    db: Session,
    org_id: str,
    rule: NormalizedRule,
    event: AppEvent,
    *,
    resolver: Optional[ContextResolver] = None,
    comms: Optional[CommunicationsGateway] = None,
    now: Optional[datetime.datetime] = None,
) -> DryRunResult:
    """Evaluate `rule` against `event` and preview its actions without writing anything."""
    resolver = resolver or resolve_automation_context
    comms = comms or CommunicationsGateway()
    now = as_utc(now) or datetime.datetime.now(datetime.timezone.utc)
    warnings = provider_warnings(db, org_id, derive_rule_flags(rule.actions))

    payload = dict(event.payload or {})
    context_error = ensure_event_context(rule.trigger_key, payload)
    if context_error:
        return DryRunResult(matched=False, warnings=[context_error] + warnings, error=context_error)

    context = resolver(db, org_id, event, now=now)
    evaluation = evaluate_rule_conditions(rule.trigger_key, rule.conditions, event, context, now=now)
    if evaluation.error:
        return DryRunResult(
            matched=False,
            match_details=evaluation.match_details,
            warnings=[evaluation.error] + warnings,
            error=evaluation.error,
        )

    previews = build_action_previews(
        db,
        org_id,
        rule.name,
        rule.trigger_key,
        event.id or "dry-run",
        rule.actions,
        context,
        payload,
        comms=comms,
    )
    return DryRunResult(
        matched=evaluation.matched,
        match_details=evaluation.match_details,
        action_previews=previews,
        warnings=warnings,
    )
