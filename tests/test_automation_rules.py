import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobflow.core.errors import ConfirmationRequiredError, RuleNotFoundError, RuleValidationError
from jobflow.models import Base
from jobflow.models.app_event import AppEvent
from jobflow.models.audit_log import AuditLog
from jobflow.models.automation_run import AutomationRuleRun
from jobflow.models.communication import CommTemplate
from jobflow.models.job import Job
from jobflow.models.org import Org
from jobflow.schemas.automation_rule import DryRunRequest, RuleTestRequest
from jobflow.services import automation_rules as rules_service
from jobflow.services.automation_engine import NormalizedRule
from jobflow.services.automation_runs import get_run, list_runs, rule_summary


ORG = "org-1"
NOW = datetime.datetime(2026, 3, 1, 9, 30, tzinfo=datetime.timezone.utc)


def _make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = SessionLocal()
    db.add(Org(id=ORG, name="Acme Plumbing"))
    db.add(Job(id="job-1", org_id=ORG, title="Blocked drain", status="completed", tags=[], flags=[]))
    db.commit()
    return db


def _status_rule(**overrides):
    data = {
        "name": "Invoice completed jobs",
        "description": "Tag jobs that need an invoice",
        "trigger_key": "job.status_updated",
        "conditions": [{"key": "job.new_status_equals", "value": "completed"}],
        "actions": [{"type": "job.add_tag", "tag": "needs_invoice"}],
    }
    data.update(overrides)
    return data


def _audit_actions(db, rule_id):
    rows = (
        db.query(AuditLog)
        .filter(AuditLog.entity_id == rule_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )
    return [(r.action, (r.meta or {}).get("action")) for r in rows]


def test_create_rule_starts_disabled_and_round_trips():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule(), user_id="u1")

    assert row.enabled is False
    assert row.created_by == "u1"
    assert row.is_customer_facing is False
    assert row.conditions == [{"key": "job.new_status_equals", "value": "completed"}]
    assert row.actions == [{"type": "job.add_tag", "tag": "needs_invoice"}]

    normalized = NormalizedRule.from_row(rules_service.get_rule(db, ORG, row.id))
    assert normalized.trigger_key == "job.status_updated"
    assert normalized.conditions[0].value == "completed"
    assert normalized.actions[0].tag == "needs_invoice"

    audit = db.query(AuditLog).filter(AuditLog.entity_id == row.id).one()
    assert audit.action == "CREATE"
    assert audit.actor_type == "user"
    assert audit.after["name"] == "Invoice completed jobs"


def test_create_rule_derives_flags():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="thanks", channel="sms", body="Thanks!"))
    db.commit()
    row = rules_service.create_rule(
        db, ORG, _status_rule(actions=[{"type": "comm.send_sms", "to": "customer", "templateKey": "thanks"}])
    )
    assert (row.is_customer_facing, row.requires_sms, row.requires_email) == (True, True, False)


def test_get_rule_is_org_scoped():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    with pytest.raises(RuleNotFoundError):
        rules_service.get_rule(db, "org-2", row.id)


def test_list_rules_filters_and_counts():
    db = _make_session()
    rules_service.create_rule(db, ORG, _status_rule(name="A"))
    rules_service.create_rule(db, ORG, _status_rule(name="B", trigger_key="job.created", conditions=[]))
    rows, total = rules_service.list_rules(db, ORG, trigger_key="job.created")
    assert total == 1
    assert rows[0].name == "B"
    rows, total = rules_service.list_rules(db, ORG, enabled=False, limit=1)
    assert total == 2
    assert len(rows) == 1


def test_enable_requires_recent_dry_run():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())

    with pytest.raises(RuleValidationError) as exc_info:
        rules_service.enable_rule(db, ORG, row.id, now=NOW)
    assert exc_info.value.message == "Rule has not been tested recently"

    out = rules_service.dry_run_rule(
        db, ORG, row.id, DryRunRequest(payload={"jobId": "job-1", "status": "completed"}), now=NOW
    )
    assert out.matched is True
    assert out.sample_event_id is None
    assert out.action_previews[0]["would_change"] is True

    with pytest.raises(RuleValidationError) as exc_info:
        rules_service.enable_rule(db, ORG, row.id, now=NOW + datetime.timedelta(minutes=11))
    assert exc_info.value.message == "Dry-run test must be within the last 10 minutes"

    enabled = rules_service.enable_rule(db, ORG, row.id, user_id="u2", now=NOW + datetime.timedelta(minutes=5))
    assert enabled.enabled is True
    assert enabled.updated_by == "u2"
    assert _audit_actions(db, row.id) == [("CREATE", None), ("UPDATE", "enable")]


def test_enable_customer_facing_needs_confirmation():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="thanks", channel="sms", body="Thanks!"))
    db.commit()
    row = rules_service.create_rule(
        db, ORG, _status_rule(actions=[{"type": "comm.send_sms", "to": "customer", "template_key": "thanks"}])
    )
    rules_service.dry_run_rule(db, ORG, row.id, DryRunRequest(payload={"jobId": "job-1", "status": "completed"}), now=NOW)

    with pytest.raises(ConfirmationRequiredError):
        rules_service.enable_rule(db, ORG, row.id, now=NOW)


def test_structural_update_disables_rule():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    rules_service.dry_run_rule(db, ORG, row.id, DryRunRequest(payload={"jobId": "job-1", "status": "completed"}), now=NOW)
    rules_service.enable_rule(db, ORG, row.id, now=NOW)

    renamed = rules_service.update_rule(db, ORG, row.id, {"name": "Renamed"})
    assert renamed.enabled is True
    assert renamed.name == "Renamed"
    assert renamed.last_tested_at is not None

    changed = rules_service.update_rule(db, ORG, row.id, {"actions": [{"type": "job.add_flag", "flag": "billing"}]})
    assert changed.enabled is False
    assert changed.last_tested_at is None
    assert changed.actions == [{"type": "job.add_flag", "flag": "billing"}]


def test_update_is_validated():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    with pytest.raises(RuleValidationError):
        rules_service.update_rule(db, ORG, row.id, {"conditions": []})
    db.expire_all()
    assert rules_service.get_rule(db, ORG, row.id).conditions == [{"key": "job.new_status_equals", "value": "completed"}]


def test_disable_and_delete_are_audited():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    rule_id = row.id
    assert rules_service.disable_rule(db, ORG, rule_id).enabled is False
    rules_service.delete_rule(db, ORG, rule_id, user_id="u1")

    with pytest.raises(RuleNotFoundError):
        rules_service.get_rule(db, ORG, rule_id)
    assert _audit_actions(db, rule_id) == [("CREATE", None), ("UPDATE", "disable"), ("DELETE", None)]


def test_dry_run_uses_latest_matching_event():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    with pytest.raises(RuleNotFoundError) as exc_info:
        rules_service.dry_run_rule(db, ORG, row.id, now=NOW)
    assert exc_info.value.message == rules_service.NO_EVENTS_FOUND

    older = AppEvent(
        org_id=ORG,
        event_type="job.status.updated",
        payload={"jobId": "job-1", "status": "scheduled"},
        created_at=NOW - datetime.timedelta(hours=2),
    )
    newer = AppEvent(
        org_id=ORG,
        event_type="job.status.updated",
        payload={"jobId": "job-1", "status": "completed"},
        created_at=NOW - datetime.timedelta(hours=1),
    )
    db.add_all([older, newer])
    db.commit()

    out = rules_service.dry_run_rule(db, ORG, row.id, now=NOW)
    assert out.sample_event_id == newer.id
    assert out.matched is True

    out = rules_service.dry_run_rule(db, ORG, row.id, DryRunRequest(event_id=older.id), now=NOW)
    assert out.sample_event_id == older.id
    assert out.matched is False
    assert db.query(AutomationRuleRun).count() == 0


def test_dry_run_rejects_mismatched_event_and_missing_context():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    other = AppEvent(org_id=ORG, event_type="job.created", payload={"jobId": "job-1"}, created_at=NOW)
    db.add(other)
    db.commit()

    with pytest.raises(RuleValidationError):
        rules_service.dry_run_rule(db, ORG, row.id, DryRunRequest(event_id=other.id), now=NOW)
    with pytest.raises(RuleNotFoundError):
        rules_service.dry_run_rule(db, ORG, row.id, DryRunRequest(event_id="missing"), now=NOW)
    with pytest.raises(RuleValidationError) as exc_info:
        rules_service.dry_run_rule(db, ORG, row.id, DryRunRequest(payload={"status": "completed"}), now=NOW)
    assert exc_info.value.message == "Job context is required but jobId is missing."
    db.expire_all()
    assert rules_service.get_rule(db, ORG, row.id).last_tested_at is None


def test_daily_dry_run_needs_payload():
    db = _make_session()
    draft = {
        "name": "Morning check",
        "trigger_key": "time.daily",
        "conditions": [{"key": "job.overdue_exists", "value": True}],
        "actions": [{"type": "reminder.create_internal", "minutes_from_now": 5, "message": "Review overdue jobs"}],
    }
    with pytest.raises(RuleNotFoundError) as exc_info:
        rules_service.dry_run_draft(db, ORG, RuleTestRequest(rule=draft), now=NOW)
    assert exc_info.value.message == rules_service.NO_EVENTS_AVAILABLE

    out = rules_service.dry_run_draft(db, ORG, RuleTestRequest(rule=draft, payload={"date": "2026-03-01"}), now=NOW)
    assert out.matched is False
    assert out.rule_id is None
    assert out.match_details["conditions"][0]["evaluated_value"] is False


def test_draft_dry_run_can_persist_tested_rule():
    db = _make_session()
    request = RuleTestRequest(
        rule=_status_rule(),
        payload={"jobId": "job-1", "status": "completed"},
        persistDraft=True,
    )
    out = rules_service.dry_run_draft(db, ORG, request, user_id="u1", now=NOW)
    assert out.matched is True
    assert out.rule_id is not None

    row = rules_service.get_rule(db, ORG, out.rule_id)
    assert row.enabled is False
    assert row.last_tested_at is not None
    assert rules_service.enable_rule(db, ORG, row.id, now=NOW + datetime.timedelta(minutes=1)).enabled is True


def test_run_history_queries():
    db = _make_session()
    row = rules_service.create_rule(db, ORG, _status_rule())
    for i, status in enumerate(["succeeded", "failed", "succeeded"]):
        db.add(
            AutomationRuleRun(
                id=f"run-{i}",
                org_id=ORG,
                rule_id=row.id,
                event_id=f"evt-{i}",
                event_key="job.status_updated",
                event_entity_id=f"job-1:{i}",
                event_payload={"jobId": "job-1"},
                idempotency_key=f"key-{i}",
                match_details={},
                status=status,
                created_at=NOW + datetime.timedelta(minutes=i),
            )
        )
    db.commit()

    rows, total = list_runs(db, ORG, rule_id=row.id)
    assert total == 3
    assert [r.id for r in rows] == ["run-2", "run-1", "run-0"]
    rows, total = list_runs(db, ORG, status="failed")
    assert [r.id for r in rows] == ["run-1"]

    run, steps = get_run(db, ORG, "run-1")
    assert run.status == "failed"
    assert steps == []
    with pytest.raises(RuleNotFoundError):
        get_run(db, "org-2", "run-1")

    summary = rule_summary(db, ORG, row.id)
    assert summary.total_runs == 3
    assert summary.counts_by_status == {"succeeded": 2, "failed": 1}
    assert summary.last_run_status == "succeeded"
