import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from jobflow.core.config import settings
from jobflow.core.errors import ConfirmationRequiredError, ProviderNotReadyError, RuleValidationError
from jobflow.models import Base
from jobflow.models.communication import CommTemplate
from jobflow.models.org import CommProviderStatus, Org, OrgSettings
from jobflow.schemas.automation_rule import parse_actions
from jobflow.services.rule_validation import (
    derive_rule_flags,
    find_missing_templates,
    provider_warnings,
    validate_rule_definition,
    validate_rule_for_enable,
    validate_rule_for_save,
)


ORG = "org-1"


def _make_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = SessionLocal()
    db.add(Org(id=ORG, name="Acme Plumbing"))
    db.commit()
    return db


def _rule(trigger_key="job.created", conditions=None, actions=None, **extra):
    data = {
        "name": "Tag new jobs",
        "trigger_key": trigger_key,
        "conditions": conditions or [],
        "actions": actions or [{"type": "job.add_tag", "tag": "new"}],
    }
    data.update(extra)
    return data


def _error_codes(exc_info):
    return [e["code"] for e in exc_info.value.details["errors"]]


def test_status_trigger_requires_status_condition():
    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition(_rule("job.status_updated", [{"key": "job.has_tag", "value": "vip"}]))
    assert _error_codes(exc_info) == ["status_condition_missing"]
    assert exc_info.value.code == "VALIDATION_ERROR"


def test_progress_trigger_requires_threshold():
    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition(_rule("job.progress_updated"))
    assert _error_codes(exc_info) == ["progress_condition_missing"]


def test_condition_not_allowed_for_trigger():
    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition(_rule("job.created", [{"key": "material.stock_below", "value": 3}]))
    assert _error_codes(exc_info) == ["condition_not_allowed"]


def test_condition_value_checks():
    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition(
            _rule(
                "job.progress_updated",
                [
                    {"key": "job.progress_gte", "value": 150},
                    {"key": "job.has_tag", "value": "  "},
                ],
            )
        )
    assert _error_codes(exc_info) == ["condition_value_out_of_range", "condition_value_invalid"]

    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition(_rule("job.created", [{"key": "job.priority_equals", "value": "extreme"}]))
    assert _error_codes(exc_info) == ["condition_value_invalid"]

    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition(_rule("job.created", [{"key": "job.is_assigned", "value": "yes"}]))
    assert _error_codes(exc_info) == ["condition_value_invalid"]


def test_shape_errors_are_validation_errors():
    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_definition({"name": "x", "trigger_key": "job.created", "conditions": [], "actions": []})
    assert exc_info.value.message == "Invalid automation rule input"

    with pytest.raises(RuleValidationError):
        validate_rule_definition(_rule("job.deleted"))

    with pytest.raises(RuleValidationError):
        validate_rule_definition(_rule(actions=[{"type": "comm.send_email", "to": "custom", "templateKey": "t"}]))


def test_camel_case_input_is_accepted():
    rule = validate_rule_definition(
        {
            "name": "  Remind crew  ",
            "triggerKey": "job.assigned",
            "conditions": [{"key": "job.scheduled_within_hours", "value": 24}],
            "actions": [{"type": "reminder.create_internal", "minutesFromNow": 30, "message": "Call ahead"}],
        }
    )
    assert rule.name == "Remind crew"
    assert rule.actions[0].minutes_from_now == 30


def test_derive_rule_flags():
    actions = parse_actions(
        [
            {"type": "comm.send_email", "to": "admin", "template_key": "a"},
            {"type": "comm.send_sms", "to": "customer", "template_key": "b"},
            {"type": "job.add_flag", "flag": "follow_up"},
        ]
    )
    flags = derive_rule_flags(actions)
    assert flags.requires_email is True
    assert flags.requires_sms is True
    assert flags.is_customer_facing is True

    internal = derive_rule_flags(parse_actions([{"type": "comm.send_inapp", "to": "ops", "template_key": "c"}]))
    assert internal.model_dump() == {"is_customer_facing": False, "requires_sms": False, "requires_email": False}


def test_missing_templates_block_save():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="job_done", channel="email", body="Done"))
    db.commit()
    actions = parse_actions(
        [
            {"type": "comm.send_email", "to": "admin", "template_key": "job_done"},
            {"type": "comm.send_sms", "to": "admin", "template_key": "job_done"},
        ]
    )
    assert find_missing_templates(db, ORG, actions) == ["job_done::sms"]

    with pytest.raises(RuleValidationError) as exc_info:
        validate_rule_for_save(db, ORG, _rule(actions=[{"type": "comm.send_sms", "to": "admin", "template_key": "job_done"}]))
    assert exc_info.value.details == {"missing_templates": ["job_done::sms"]}


def test_enable_requires_customer_facing_confirmation():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="welcome", channel="email", subject="Hi", body="Welcome"))
    db.commit()
    data = _rule(actions=[{"type": "comm.send_email", "to": "customer", "template_key": "welcome"}])

    with pytest.raises(ConfirmationRequiredError):
        validate_rule_for_enable(db, ORG, data)


def test_enable_requires_email_provider(monkeypatch):
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="welcome", channel="email", subject="Hi", body="Welcome"))
    db.commit()
    data = _rule(actions=[{"type": "comm.send_email", "to": "customer", "template_key": "welcome"}])

    monkeypatch.setattr(settings, "email_provider_api_key", None)
    with pytest.raises(ProviderNotReadyError) as exc_info:
        validate_rule_for_enable(db, ORG, data, confirmed_customer_facing=True)
    assert exc_info.value.details == {"channel": "email"}

    monkeypatch.setattr(settings, "email_provider_api_key", "key-123")
    with pytest.raises(ProviderNotReadyError):
        validate_rule_for_enable(db, ORG, data, confirmed_customer_facing=True)

    db.add(OrgSettings(org_id=ORG, comm_from_email="ops@acme.test"))
    db.commit()
    validated = validate_rule_for_enable(db, ORG, data, confirmed_customer_facing=True)
    assert validated.flags.is_customer_facing is True


def test_enable_requires_sms_provider():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="eta", channel="sms", body="On our way"))
    db.commit()
    data = _rule(actions=[{"type": "comm.send_sms", "to": "admin", "template_key": "eta"}])

    with pytest.raises(ProviderNotReadyError) as exc_info:
        validate_rule_for_enable(db, ORG, data)
    assert exc_info.value.details == {"channel": "sms"}

    db.add(CommProviderStatus(org_id=ORG, sms_enabled=True))
    db.commit()
    assert validate_rule_for_enable(db, ORG, data).flags.requires_sms is True


def test_provider_warnings(monkeypatch):
    db = _make_session()
    monkeypatch.setattr(settings, "email_provider_api_key", None)
    db.add(OrgSettings(org_id=ORG, automations_disabled=True))
    db.commit()
    flags = derive_rule_flags(
        parse_actions(
            [
                {"type": "comm.send_email", "to": "admin", "template_key": "a"},
                {"type": "comm.send_sms", "to": "admin", "template_key": "b"},
            ]
        )
    )
    assert provider_warnings(db, ORG, flags) == ["org_disabled", "email_provider_not_ready", "sms_provider_not_ready"]
