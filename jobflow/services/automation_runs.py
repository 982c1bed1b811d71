"""
Read-side queries over automation run history.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.errors import RuleNotFoundError
from ..models.automation_run import AutomationRuleRun, AutomationRuleRunStep
from ..schemas.automation_rule import RuleSummaryOut
from .automation_rules import get_rule


def list_runs(
    db: Session,
    org_id: str,
    *,
    rule_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AutomationRuleRun], int]:
    query = db.query(AutomationRuleRun).filter(AutomationRuleRun.org_id == org_id)
    if rule_id:
        query = query.filter(AutomationRuleRun.rule_id == rule_id)
    if status:
        query = query.filter(AutomationRuleRun.status == status)
    total = query.count()
    rows = (
        query.order_by(AutomationRuleRun.created_at.desc(), AutomationRuleRun.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def get_run(db: Session, org_id: str, run_id: str) -> tuple[AutomationRuleRun, list[AutomationRuleRunStep]]:
    run = (
        db.query(AutomationRuleRun)
        .filter(AutomationRuleRun.org_id == org_id, AutomationRuleRun.id == run_id)
        .first()
    )
    if run is None:
        raise RuleNotFoundError("Automation run not found")
    steps = (
        db.query(AutomationRuleRunStep)
        .filter(AutomationRuleRunStep.run_id == run.id)
        .order_by(AutomationRuleRunStep.step_index.asc())
        .all()
    )
    return run, steps


def rule_summary(db: Session, org_id: str, rule_id: str) -> RuleSummaryOut:
    rule = get_rule(db, org_id, rule_id)
    counts = {
        status: int(count)
        for status, count in db.query(AutomationRuleRun.status, func.count(AutomationRuleRun.id))
        .filter(AutomationRuleRun.org_id == org_id, AutomationRuleRun.rule_id == rule.id)
        .group_by(AutomationRuleRun.status)
        .all()
    }
    last = (
        db.query(AutomationRuleRun)
        .filter(AutomationRuleRun.org_id == org_id, AutomationRuleRun.rule_id == rule.id)
        .order_by(AutomationRuleRun.created_at.desc())
        .first()
    )
    return RuleSummaryOut(
        rule_id=rule.id,
        total_runs=sum(counts.values()),
        counts_by_status=counts,
        last_run_at=last.created_at if last else None,
        last_run_status=last.status if last else None,
    )
