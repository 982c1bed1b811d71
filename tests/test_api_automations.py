import os

# Lightweight DB setup and no startup side effects
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JOBFLOW_AUTH_DISABLED", "true")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobflow.core.db import get_db, get_session_factory
from jobflow.main import create_app
from jobflow.models import Base
from jobflow.models.job import CrewMember, Job
from jobflow.models.org import Org


ORG = "org-1"
HEADERS = {"X-Org-Id": ORG, "X-User-Id": "user-1"}


def _client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    with SessionLocal() as db:
        db.add(Org(id=ORG, name="Acme Plumbing"))
        db.add(Job(id="job-1", org_id=ORG, title="Burst pipe", status="in_progress", tags=[], flags=[]))
        db.add(CrewMember(id="crew-1", org_id=ORG, display_name="Night crew"))
        db.commit()

    def _get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app = create_app()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: SessionLocal
    return TestClient(app), SessionLocal


RULE = {
    "name": "Invoice completed jobs",
    "triggerKey": "job.status_updated",
    "conditions": [{"key": "job.new_status_equals", "value": "completed"}],
    "actions": [{"type": "job.add_tag", "tag": "needs_invoice"}],
}


def test_catalog_endpoints():
    client, _ = _client()
    resp = client.get("/api/v1/automations/triggers", headers=HEADERS)
    assert resp.status_code == 200
    assert "time.daily" in resp.json()

    resp = client.get("/api/v1/automations/conditions", params={"trigger_key": "job.progress_updated"}, headers=HEADERS)
    assert resp.status_code == 200
    assert {c["key"] for c in resp.json()} == {"job.progress_gte", "job.progress_lte", "job.has_tag"}

    resp = client.get("/api/v1/automations/conditions", params={"trigger_key": "job.deleted"}, headers=HEADERS)
    assert resp.status_code == 404

    resp = client.get("/api/v1/automations/conditions/enum-values", params={"source": "crew"}, headers=HEADERS)
    assert resp.json() == [{"value": "crew-1", "label": "Night crew"}]


def test_org_header_and_admin_role_required():
    client, _ = _client()
    assert client.get("/api/v1/automations/rules").status_code == 400
    resp = client.post("/api/v1/automations/rules", json=RULE, headers={**HEADERS, "X-User-Role": "MEMBER"})
    assert resp.status_code == 403


def test_invalid_rule_returns_structured_error():
    client, _ = _client()
    resp = client.post("/api/v1/automations/rules", json={**RULE, "conditions": []}, headers=HEADERS)
    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["code"] == "VALIDATION_ERROR"
    assert detail["details"]["errors"][0]["code"] == "status_condition_missing"


def test_rule_lifecycle_and_event_processing():
    client, _ = _client()

    resp = client.post("/api/v1/automations/rules", json=RULE, headers=HEADERS)
    assert resp.status_code == 201
    rule = resp.json()
    assert rule["enabled"] is False
    rule_id = rule["id"]

    resp = client.post(f"/api/v1/automations/rules/{rule_id}/enable", headers=HEADERS)
    assert resp.status_code == 422
    assert resp.json()["detail"]["message"] == "Rule has not been tested recently"

    resp = client.post(
        f"/api/v1/automations/rules/{rule_id}/dry-run",
        json={"payload": {"jobId": "job-1", "status": "completed"}},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["matched"] is True

    resp = client.post(f"/api/v1/automations/rules/{rule_id}/enable", json={}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["enabled"] is True

    resp = client.get("/api/v1/automations/rules", params={"enabled": "true"}, headers=HEADERS)
    assert resp.status_code == 200
    assert [r["id"] for r in resp.json()] == [rule_id]
    assert resp.headers["X-Total-Count"] == "1"

    event = {"eventType": "job.status.updated", "payload": {"jobId": "job-1", "status": "completed"}}
    resp = client.post("/api/v1/automations/events", json=event, headers=HEADERS)
    assert resp.status_code == 201
    body = resp.json()
    assert body["event"]["automation_processed_at"] is not None
    assert [(o["status"], o["created"]) for o in body["outcomes"]] == [("succeeded", True)]
    run_id = body["outcomes"][0]["run_id"]

    resp = client.get("/api/v1/automations/runs", params={"rule_id": rule_id}, headers=HEADERS)
    assert [r["id"] for r in resp.json()] == [run_id]
    assert client.get("/api/v1/automations/runs", params={"status": "bogus"}, headers=HEADERS).json() == []

    resp = client.get(f"/api/v1/automations/runs/{run_id}", headers=HEADERS)
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["status"] == "succeeded"
    assert detail["event_payload"]["status"] == "completed"
    assert [s["action_type"] for s in detail["steps"]] == ["job.add_tag"]

    resp = client.get(f"/api/v1/automations/rules/{rule_id}/summary", headers=HEADERS)
    assert resp.json()["counts_by_status"] == {"succeeded": 1}

    resp = client.patch(
        f"/api/v1/automations/rules/{rule_id}",
        json={"actions": [{"type": "job.add_flag", "flag": "billing"}]},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["enabled"] is False

    assert client.delete(f"/api/v1/automations/rules/{rule_id}", headers=HEADERS).status_code == 204
    assert client.get(f"/api/v1/automations/rules/{rule_id}", headers=HEADERS).status_code == 404
    assert client.get("/api/v1/automations/runs", params={"rule_id": rule_id}, headers=HEADERS).json() == []


def test_draft_test_endpoint():
    client, _ = _client()
    resp = client.post(
        "/api/v1/automations/test",
        json={"rule": RULE, "payload": {"jobId": "job-1", "status": "scheduled"}},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["matched"] is False
    assert body["rule_id"] is None
    assert body["match_details"]["conditions"][0]["evaluated_value"] == "scheduled"


def test_events_without_processing_stay_pending():
    client, _ = _client()
    resp = client.post(
        "/api/v1/automations/events",
        json={"eventType": "job.created", "payload": {"jobId": "job-1"}, "process": False},
        headers=HEADERS,
    )
    assert resp.status_code == 201
    assert resp.json()["event"]["automation_processed_at"] is None
    assert resp.json()["outcomes"] == []


def test_health():
    client, _ = _client()
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
