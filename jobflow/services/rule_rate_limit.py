"""
Per-rule trailing-window rate limiting backed by persisted runs.

Counts the rule's runs (excluding skipped) created in the last hour and the
last day. The run under evaluation is already persisted and is counted.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.automation_run import AutomationRuleRun


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    hourly_count: int
    daily_count: int


def _count_since(db: Session, org_id: str, rule_id: str, since: datetime.datetime) -> int:
    return int(
        db.query(func.count(AutomationRuleRun.id))
        .filter(
            AutomationRuleRun.org_id == org_id,
            AutomationRuleRun.rule_id == rule_id,
            AutomationRuleRun.status != "skipped",
            AutomationRuleRun.created_at >= since,
        )
        .scalar()
        or 0
    )


def check_rule_rate_limit(
    db: Session,
    org_id: str,
    rule_id: str,
    now: Optional[datetime.datetime] = None,
    *,
    hourly_limit: Optional[int] = None,
    daily_limit: Optional[int] = None,
) -> RateLimitResult:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if hourly_limit is None:
        hourly_limit = settings.automation_rate_limit_hourly
    if daily_limit is None:
        daily_limit = settings.automation_rate_limit_daily

    hourly = _count_since(db, org_id, rule_id, now - datetime.timedelta(hours=1))
    daily = _count_since(db, org_id, rule_id, now - datetime.timedelta(days=1))
    return RateLimitResult(
        limited=hourly > hourly_limit or daily > daily_limit,
        hourly_count=hourly,
        daily_count=daily,
    )
