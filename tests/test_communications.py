import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from jobflow.core.errors import CommunicationError
from jobflow.models import Base
from jobflow.models.communication import CommOutbox, CommTemplate
from jobflow.services.communications import CommRecipient, CommunicationsGateway, render_template


ORG = "org-1"


def _make_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    return SessionLocal()


def test_render_template_reports_missing_paths():
    result = render_template(
        "Hi {{recipient.name}}, {{ job.tags }} / {{crew.0.name}} / {{ job.missing }} / {{ flag }}",
        {"recipient": {"name": "Pat"}, "job": {"tags": ["a", "b"]}, "crew": [{"name": "Chris"}], "flag": True},
    )
    assert result.rendered == "Hi Pat, a, b / Chris /  / true"
    assert result.missing == ["job.missing"]


def test_render_template_uses_keys_not_dict_methods():
    result = render_template(
        "{{ job.items }}|{{ job.get }}|{{ crew.3.name }}|{{ job.notes }}\n",
        {"job": {"get": "fetch", "notes": None}, "crew": []},
    )
    assert result.rendered == "|fetch||\n"
    assert result.missing == ["job.items", "crew.3", "job.notes"]


def test_render_template_supports_jinja_filters():
    result = render_template("{{ job.title | upper }} {% if flag %}urgent{% endif %}", {"job": {"title": "roof"}, "flag": True})
    assert result.rendered == "ROOF urgent"
    assert result.missing == []


def test_render_template_syntax_error_is_a_communication_error():
    with pytest.raises(CommunicationError) as exc_info:
        render_template("Hi {{ recipient.name ", {})
    assert exc_info.value.message == "Communication template could not be rendered"
    assert exc_info.value.details["error"]


def test_render_template_blocks_unsafe_attributes():
    with pytest.raises(CommunicationError):
        render_template("{{ name.__class__.__mro__ }}", {"name": "Pat"})


def test_emit_uses_latest_template_and_skips_undeliverable_recipients():
    db = _make_session()
    db.add_all(
        [
            CommTemplate(org_id=ORG, key="eta", channel="sms", version=1, body="old"),
            CommTemplate(org_id=ORG, key="eta", channel="sms", version=2, body="Hi {{ recipient.name }}, on our way"),
        ]
    )
    db.commit()

    recipients = [
        CommRecipient(type="client", name="Pat", phone="0400 111 222", email="pat@example.com"),
        CommRecipient(type="user", user_id="u1", name="Alex", email="alex@acme.test"),
    ]
    result = CommunicationsGateway().emit(db, ORG, "eta", "sms", recipients, {}, entity_id="step-1")

    assert len(result.entries) == 1
    row = db.query(CommOutbox).one()
    assert row.body_rendered == "Hi Pat, on our way"
    assert row.recipient_phone == "0400 111 222"
    assert row.recipient_email is None
    assert row.event_id == result.comm_event_id
    assert row.entity_id == "step-1"
    assert row.status == "PENDING"


def test_emit_requires_template():
    db = _make_session()
    with pytest.raises(CommunicationError) as exc_info:
        CommunicationsGateway().emit(db, ORG, "nope", "email", [CommRecipient(type="custom", email="a@b.co")], {})
    assert exc_info.value.details == {"template_key": "nope", "channel": "email"}

    with pytest.raises(CommunicationError):
        CommunicationsGateway().emit(db, ORG, "nope", "fax", [], {})


def test_render_preview_truncates_body():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="long", channel="email", subject="About {{ job.title }}", body="x" * 500))
    db.commit()
    preview = CommunicationsGateway().render_preview(db, ORG, "long", "email", {"job": {"title": "Roof"}})
    assert preview["subject"] == "About Roof"
    assert len(preview["preview_text"]) == 200
    assert CommunicationsGateway().render_preview(db, ORG, "long", "sms", {}) is None


def test_render_preview_reports_broken_template():
    db = _make_session()
    db.add(CommTemplate(org_id=ORG, key="broken", channel="sms", body="Hi {% if %}"))
    db.commit()
    preview = CommunicationsGateway().render_preview(db, ORG, "broken", "sms", {})
    assert preview["preview_text"] == ""
    assert preview["render_error"]


def test_recipient_dedupe_keys():
    assert CommRecipient(type="user", user_id="u1", email="x@y.z").dedupe_key == "user:u1"
    assert CommRecipient(type="custom", phone="123456").dedupe_key == "contact:123456"
    assert CommRecipient(type="user", user_id="u1").deliverable_on("in_app") is True
    assert CommRecipient(type="custom", email="a@b.co").deliverable_on("in_app") is False
