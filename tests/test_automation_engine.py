import datetime
import threading
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobflow.models import Base
from jobflow.models.app_event import AppEvent
from jobflow.models.automation_rule import AutomationRule
from jobflow.models.automation_run import AutomationRuleRun, AutomationRuleRunStep
from jobflow.models.communication import CommOutbox, CommTemplate
from jobflow.models.job import Job, JobContact
from jobflow.models.org import Org, OrgSettings
from jobflow.services.automation_engine import (
    JOB_CONTEXT_MISSING,
    insert_run_if_absent,
    process_automation_event,
)
from jobflow.services.condition_evaluator import CONTEXT_MISSING
from jobflow.services.idempotency import build_idempotency_key


ORG = "org-1"
NOW = datetime.datetime(2026, 3, 1, 9, 30, tzinfo=datetime.timezone.utc)


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _seed(db, *, tags=None) -> Job:
    db.add(Org(id=ORG, name="Acme Plumbing"))
    job = Job(id="job-1", org_id=ORG, title="Fix leaking tap", status="in_progress", tags=list(tags or []), flags=[])
    db.add(job)
    db.commit()
    return job


def _add_rule(db, trigger_key, actions, conditions=None, *, name="Rule", created_at=None) -> AutomationRule:
    rule = AutomationRule(
        org_id=ORG,
        name=name,
        trigger_key=trigger_key,
        conditions=conditions or [],
        actions=actions,
        enabled=True,
        created_at=created_at or NOW - datetime.timedelta(days=1),
    )
    db.add(rule)
    db.commit()
    return rule


def _add_event(db, event_type, payload, *, created_at=None, org_id=ORG) -> AppEvent:
    event = AppEvent(org_id=org_id, event_type=event_type, payload=payload, created_at=created_at or NOW)
    db.add(event)
    db.commit()
    return event


def _process(session_factory, event_id, **kwargs):
    kwargs.setdefault("now", NOW)
    kwargs.setdefault("max_workers", 1)
    return process_automation_event(ORG, event_id, session_factory=session_factory, **kwargs)


def _runs(db, rule_id=None):
    db.expire_all()
    query = db.query(AutomationRuleRun)
    if rule_id:
        query = query.filter(AutomationRuleRun.rule_id == rule_id)
    return query.all()


def _steps(db, run_id):
    return (
        db.query(AutomationRuleRunStep)
        .filter(AutomationRuleRunStep.run_id == run_id)
        .order_by(AutomationRuleRunStep.step_index.asc())
        .all()
    )


def test_status_change_tags_job_once():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(
        db,
        "job.status_updated",
        [{"type": "job.add_tag", "tag": "needs_invoice"}],
        [{"key": "job.new_status_equals", "value": "completed"}],
    )
    event = _add_event(db, "job.status.updated", {"jobId": "job-1", "status": "completed", "previousStatus": "in_progress"})

    outcomes = _process(session_factory, event.id)
    assert [(o.status, o.created) for o in outcomes] == [("succeeded", True)]

    runs = _runs(db)
    assert len(runs) == 1
    run = runs[0]
    assert run.status == "succeeded"
    assert run.matched is True
    assert run.event_key == "job.status_updated"
    assert run.finished_at is not None
    assert run.match_details["conditions"][0]["passed"] is True
    assert [s.status for s in _steps(db, run.id)] == ["succeeded"]
    assert db.get(Job, "job-1").tags == ["needs_invoice"]

    # A second completion event at a later time is a new occurrence; the tag is not duplicated.
    later = _add_event(
        db,
        "job.status.updated",
        {"jobId": "job-1", "status": "completed"},
        created_at=NOW + datetime.timedelta(minutes=1),
    )
    outcomes = _process(session_factory, later.id)
    assert outcomes[0].status == "succeeded"
    db.expire_all()
    assert db.get(Job, "job-1").tags == ["needs_invoice"]
    second_run = [r for r in _runs(db) if r.event_id == later.id][0]
    assert _steps(db, second_run.id)[0].result["changed"] is False


def test_duplicate_delivery_creates_one_run():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(db, "job.created", [{"type": "job.add_flag", "flag": "new"}])
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    first = _process(session_factory, event.id)
    second = _process(session_factory, event.id)
    assert first[0].created is True
    assert second[0].created is False
    assert second[0].status == "duplicate"
    assert second[0].run_id is None
    runs = _runs(db)
    assert len(runs) == 1
    assert len(_steps(db, runs[0].id)) == 1


def test_insert_run_if_absent_first_writer_wins():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    rule = _add_rule(db, "job.created", [{"type": "job.add_flag", "flag": "new"}])
    key = build_idempotency_key(ORG, rule.id, "job-1:x")

    def _values(run_id):
        return {
            "id": run_id,
            "org_id": ORG,
            "rule_id": rule.id,
            "event_id": "evt-1",
            "event_key": "job.created",
            "event_entity_id": "job-1:x",
            "event_payload": {},
            "idempotency_key": key,
            "matched": False,
            "match_details": {},
            "status": "queued",
            "rate_limited": False,
            "created_at": NOW,
        }

    assert insert_run_if_absent(db, _values("run-a")) is True
    assert insert_run_if_absent(db, _values("run-b")) is False
    assert [r.id for r in _runs(db)] == ["run-a"]


def test_progress_updates_collapse_per_bucket():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(
        db,
        "job.progress_updated",
        [{"type": "job.add_flag", "flag": "halfway"}],
        [{"key": "job.progress_gte", "value": 45}],
    )
    first = _add_event(db, "job.progress.updated", {"jobId": "job-1", "progressPercent": 49})
    second = _add_event(
        db,
        "job.progress.updated",
        {"jobId": "job-1", "progressPercent": 52},
        created_at=NOW + datetime.timedelta(minutes=3),
    )

    assert _process(session_factory, first.id)[0].status == "succeeded"
    assert _process(session_factory, second.id)[0].status == "duplicate"
    runs = _runs(db)
    assert len(runs) == 1
    assert runs[0].event_entity_id == "job-1:progress:50"


def test_daily_events_run_once_per_day():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(db, "time.daily", [{"type": "reminder.create_internal", "minutes_from_now": 15, "message": "Standup"}])
    morning = _add_event(db, "time.daily", {"date": "2026-03-01"}, created_at=NOW)
    retry = _add_event(db, "time.daily", {"date": "2026-03-01"}, created_at=NOW + datetime.timedelta(hours=2))

    assert _process(session_factory, morning.id)[0].status == "succeeded"
    assert _process(session_factory, retry.id)[0].status == "duplicate"
    runs = _runs(db)
    assert len(runs) == 1
    step = _steps(db, runs[0].id)[0]
    assert step.result == {"stubbed": True, "reason": "reminders_not_implemented", "minutes_from_now": 15}


def test_non_matching_rule_is_skipped():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(
        db,
        "job.status_updated",
        [{"type": "job.add_tag", "tag": "done"}],
        [{"key": "job.new_status_equals", "value": "completed"}],
    )
    event = _add_event(db, "job.status.updated", {"jobId": "job-1", "status": "scheduled"})

    assert _process(session_factory, event.id)[0].status == "skipped"
    run = _runs(db)[0]
    assert run.matched is False
    assert run.finished_at is not None
    assert _steps(db, run.id) == []
    db.expire_all()
    assert db.get(Job, "job-1").tags == []


def test_missing_job_id_fails_run():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}])
    event = _add_event(db, "job.created", {"title": "no job reference"})

    outcome = _process(session_factory, event.id)[0]
    assert outcome.status == "failed"
    assert outcome.error == JOB_CONTEXT_MISSING
    run = _runs(db)[0]
    assert run.status == "failed"
    assert run.error == JOB_CONTEXT_MISSING
    assert _steps(db, run.id) == []


def test_condition_context_missing_fails_run():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(
        db,
        "job.created",
        [{"type": "job.add_tag", "tag": "install"}],
        [{"key": "job.type_equals", "value": "install"}],
    )
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "failed"
    run = _runs(db)[0]
    assert run.error == CONTEXT_MISSING
    assert run.matched is False
    assert run.match_details["conditions"][0]["passed"] is False


def test_empty_conditions_always_match():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(db, "job.photo_added", [{"type": "job.add_flag", "flag": "has_photos"}])
    event = _add_event(db, "job.photos.added", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "succeeded"
    db.expire_all()
    assert db.get(Job, "job-1").flags == ["has_photos"]


def test_kill_switch_ignores_events():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    db.add(OrgSettings(org_id=ORG, automations_disabled=True))
    db.commit()
    _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}])
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id) == []
    assert _runs(db) == []
    assert _process(session_factory, event.id, automations_disabled=False)[0].status == "succeeded"


def test_unknown_events_and_other_orgs_are_ignored():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}])
    unknown = _add_event(db, "job.archived", {"jobId": "job-1"})
    foreign = _add_event(db, "job.created", {"jobId": "job-1"}, org_id="org-2")

    assert _process(session_factory, unknown.id) == []
    assert _process(session_factory, foreign.id) == []
    assert _process(session_factory, "missing-event") == []
    assert _runs(db) == []


def test_disabled_rules_and_other_triggers_do_not_run():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    disabled = _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "a"}])
    disabled.enabled = False
    db.commit()
    _add_rule(db, "job.completed", [{"type": "job.add_tag", "tag": "b"}])
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id) == []


def test_rule_failure_is_isolated_and_rules_run_in_creation_order():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    broken = _add_rule(
        db,
        "job.created",
        [{"type": "tasks.create_checklist", "checklist_key": "Missing template"}],
        name="Broken",
        created_at=NOW - datetime.timedelta(days=2),
    )
    healthy = _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}], name="Healthy")
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    outcomes = _process(session_factory, event.id)
    assert [(o.rule_id, o.status) for o in outcomes] == [(broken.id, "failed"), (healthy.id, "succeeded")]
    failed_run = _runs(db, broken.id)[0]
    assert failed_run.error == "Checklist template not found"
    assert failed_run.error_details["step_index"] == 0
    db.expire_all()
    assert db.get(Job, "job-1").tags == ["new"]


def test_concurrent_delivery_runs_each_rule_once_on_the_thread_pool(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'automations.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = session_factory()
    _seed(db)
    broken = _add_rule(
        db,
        "job.created",
        [{"type": "tasks.create_checklist", "checklist_key": "Missing template"}],
        name="Broken",
        created_at=NOW - datetime.timedelta(days=2),
    )
    healthy = _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}], name="Healthy")
    event = _add_event(db, "job.created", {"jobId": "job-1"})
    broken_id, healthy_id, event_id = broken.id, healthy.id, event.id
    db.close()

    barrier = threading.Barrier(2)

    def _deliver(_):
        barrier.wait(timeout=10)
        return _process(session_factory, event_id, max_workers=2)

    with ThreadPoolExecutor(max_workers=2) as pool:
        deliveries = list(pool.map(_deliver, range(2)))

    outcomes = [o for delivery in deliveries for o in delivery]
    for rule_id in (broken_id, healthy_id):
        created = [o for o in outcomes if o.rule_id == rule_id and o.created]
        duplicates = [o for o in outcomes if o.rule_id == rule_id and o.status == "duplicate"]
        assert len(created) == 1
        assert len(duplicates) == 1

    db = session_factory()
    all_runs = db.query(AutomationRuleRun).all()
    assert len(all_runs) == 2
    runs = {run.rule_id: run for run in all_runs}
    assert runs[broken_id].status == "failed"
    assert runs[broken_id].error == "Checklist template not found"
    assert runs[healthy_id].status == "succeeded"
    assert [s.status for s in _steps(db, runs[healthy_id].id)] == ["succeeded"]
    assert db.get(Job, "job-1").tags == ["new"]
    db.close()
    engine.dispose()


def test_actions_stop_at_first_failure():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(
        db,
        "job.created",
        [
            {"type": "job.add_tag", "tag": "first"},
            {"type": "tasks.create_checklist", "checklist_key": "Missing template"},
            {"type": "job.add_flag", "flag": "never"},
        ],
    )
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "failed"
    run = _runs(db)[0]
    steps = _steps(db, run.id)
    assert [(s.step_index, s.status) for s in steps] == [(0, "succeeded"), (1, "failed")]
    assert steps[1].error == "Checklist template not found"
    job = db.get(Job, "job-1")
    assert job.tags == ["first"]
    assert job.flags == []


def test_rate_limited_rule_records_run_without_steps():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    rule = _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}])
    for i in range(20):
        db.add(
            AutomationRuleRun(
                org_id=ORG,
                rule_id=rule.id,
                event_id=f"old-{i}",
                event_key="job.created",
                event_entity_id=f"job-1:old-{i}",
                event_payload={},
                idempotency_key=build_idempotency_key(ORG, rule.id, f"job-1:old-{i}"),
                match_details={},
                status="succeeded",
                created_at=NOW - datetime.timedelta(minutes=10),
            )
        )
    db.commit()
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "rate_limited"
    run = [r for r in _runs(db, rule.id) if r.event_id == event.id][0]
    assert run.status == "rate_limited"
    assert run.rate_limited is True
    assert run.matched is True
    assert _steps(db, run.id) == []
    assert db.get(Job, "job-1").tags == []


def test_skipped_runs_do_not_count_towards_rate_limit():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    rule = _add_rule(db, "job.created", [{"type": "job.add_tag", "tag": "new"}])
    for i in range(25):
        db.add(
            AutomationRuleRun(
                org_id=ORG,
                rule_id=rule.id,
                event_id=f"old-{i}",
                event_key="job.created",
                event_entity_id=f"job-1:old-{i}",
                event_payload={},
                idempotency_key=build_idempotency_key(ORG, rule.id, f"job-1:old-{i}"),
                match_details={},
                status="skipped",
                created_at=NOW - datetime.timedelta(minutes=10),
            )
        )
    db.commit()
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "succeeded"


def test_customer_email_is_enqueued_with_rendered_template():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    db.add(JobContact(org_id=ORG, job_id="job-1", role="client", name="Pat", email="pat@example.com"))
    db.add(
        CommTemplate(
            org_id=ORG,
            key="job_done",
            channel="email",
            subject="{{ job.title }} is complete",
            body="Hi {{ recipient.name }}, thanks from {{ org.name }}.",
        )
    )
    db.commit()
    _add_rule(
        db,
        "job.completed",
        [{"type": "comm.send_email", "to": "customer", "template_key": "job_done"}],
    )
    event = _add_event(db, "job.completed", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "succeeded"
    rows = db.query(CommOutbox).all()
    assert len(rows) == 1
    assert rows[0].recipient_email == "pat@example.com"
    assert rows[0].subject_rendered == "Fix leaking tap is complete"
    assert rows[0].body_rendered == "Hi Pat, thanks from Acme Plumbing."
    assert rows[0].status == "PENDING"
    assert rows[0].source == "automation_rule"

    step = _steps(db, _runs(db)[0].id)[0]
    assert step.result["recipient_count"] == 1
    assert step.result["outbox_ids"] == [rows[0].id]
    assert step.comm_preview["subject"] == "Fix leaking tap is complete"
    assert rows[0].entity_id == step.id


def test_zero_recipients_is_not_a_failure():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(
        db,
        "job.completed",
        [
            {"type": "comm.send_email", "to": "customer", "template_key": "job_done"},
            {"type": "job.add_tag", "tag": "closed"},
        ],
    )
    event = _add_event(db, "job.completed", {"jobId": "job-1"})

    assert _process(session_factory, event.id)[0].status == "succeeded"
    steps = _steps(db, _runs(db)[0].id)
    assert steps[0].status == "succeeded"
    assert steps[0].result["recipient_count"] == 0
    assert steps[0].result["skipped_reason"] == "no_recipients"
    assert steps[1].status == "succeeded"
    assert db.query(CommOutbox).count() == 0


def test_invalid_stored_rule_is_skipped():
    session_factory = _make_session_factory()
    db = session_factory()
    _seed(db)
    _add_rule(db, "job.created", [{"type": "job.delete_everything"}])
    event = _add_event(db, "job.created", {"jobId": "job-1"})

    assert _process(session_factory, event.id) == []
    assert _runs(db) == []
