import time

import pytest
from fastapi.testclient import TestClient

from chaintrust.api.registry import get_engine
from chaintrust.config import settings
from chaintrust.errors import TransportError
from chaintrust.main import app
from chaintrust.monitoring.events import AlertSeverity, AlertType
from chaintrust.monitoring.monitor import TaskPriority, TaskType
from chaintrust.security import create_access_token

from tests.conftest import OWNER

BASE = "/v1/registry"


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(settings, "SCHEDULER_IN_PROCESS", False)
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def auth(principal=OWNER):
    return {"Authorization": f"Bearer {create_access_token(principal)}"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-Id"]


def test_scores(client, acme):
    response = client.get(f"{BASE}/companies/acme/scores")
    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"verification", "reputation", "risk", "status"}
    assert body["risk"]["level"] == "Low"

    assert client.get(f"{BASE}/companies/ghost/scores").status_code == 404


def test_writes_need_a_valid_token(client, acme):
    url = f"{BASE}/companies/acme/challenges"
    assert client.post(url, json={"target_kind": "domain"}).status_code == 401

    bad = {"Authorization": "Bearer not-a-token"}
    assert client.post(url, json={"target_kind": "domain"}, headers=bad).status_code == 401


def test_owner_only_actions(client, acme):
    response = client.post(f"{BASE}/companies/acme/challenges",
                           json={"target_kind": "domain"}, headers=auth("mallory"))
    assert response.status_code == 403


def test_domain_verification_over_http(client, fetcher, acme):
    response = client.post(f"{BASE}/companies/acme/challenges",
                           json={"target_kind": "domain"}, headers=auth())
    assert response.status_code == 200
    challenge = response.json()
    assert challenge["target"] == "acme.xyz"
    assert challenge["method"] == "dns_txt"

    fetcher.txt["acme.xyz"] = f"chaintrust-verification={challenge['expected']}"
    response = client.post(f"{BASE}/companies/acme/challenges/verify",
                           json={"target_kind": "domain"}, headers=auth())
    assert response.status_code == 200
    assert response.json()["success"] is True

    response = client.post(f"{BASE}/companies/acme/challenges/verify",
                           json={"target_kind": "domain"}, headers=auth())
    assert response.status_code == 404


def test_invalid_challenge_input(client, acme):
    response = client.post(f"{BASE}/companies/acme/challenges",
                           json={"target_kind": "ethereum", "target": "0x123"}, headers=auth())
    assert response.status_code == 400


def test_rate_limit_returns_429(client, acme):
    url = f"{BASE}/companies/acme/challenges"
    for _ in range(5):
        assert client.post(url, json={"target_kind": "domain"}, headers=auth()).status_code == 200

    response = client.post(url, json={"target_kind": "domain"}, headers=auth())

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "301"
    assert response.json()["detail"]["action_class"] == "verification"


def test_evidence_outage_is_502(client, fetcher, acme):
    client.post(f"{BASE}/companies/acme/challenges", json={"target_kind": "domain"}, headers=auth())
    fetcher.failures["acme.xyz"] = TransportError("dns", "SERVFAIL")

    response = client.post(f"{BASE}/companies/acme/challenges/verify",
                           json={"target_kind": "domain"}, headers=auth())

    assert response.status_code == 502


def test_community_endpoints(client, store, acme):
    response = client.post(f"{BASE}/companies/acme/vouches", json={"message": "legit"}, headers=auth("bob"))
    assert response.json() == {"status": "ok", "weight": 1}

    response = client.post(f"{BASE}/companies/acme/testimonials",
                           json={"author_name": "Ann", "role": "Engineer", "message": "Great"},
                           headers=auth("ann"))
    assert response.status_code == 200

    stats = client.get(f"{BASE}/companies/acme/community").json()
    assert stats["total_vouches"] == 1
    assert stats["total_testimonials"] == 1

    board = client.get(f"{BASE}/leaderboard", params={"limit": 5}).json()["leaderboard"]
    assert board[0]["company_id"] == "acme"

    response = client.post(f"{BASE}/companies/acme/stake", json={"amount": 0}, headers=auth())
    assert response.status_code == 422


def test_reports_and_monitoring(client, acme, monkeypatch):
    response = client.post(f"{BASE}/companies/acme/reports",
                           json={"report_type": "suspicious", "evidence": "Website went dark"},
                           headers=auth("bob"))
    assert response.status_code == 200
    assert response.json()["message"] == "Report submitted successfully"

    response = client.post(f"{BASE}/companies/acme/reports",
                           json={"report_type": "rumour", "evidence": "x"}, headers=auth("bob"))
    assert response.status_code == 422

    url = f"{BASE}/monitoring/events"
    assert client.get(url).status_code == 401
    assert client.get(url, headers=auth("bob")).status_code == 403

    monkeypatch.setattr(settings, "MODERATORS", ["mod"])
    events = client.get(url, params={"limit": 10}, headers=auth("mod")).json()["events"]
    assert events[0]["event_type"] == "community_report"

    stats = client.get(f"{BASE}/monitoring/stats").json()
    assert stats["pending_tasks"] == 0


def test_alert_acknowledgement(client, engine, acme, monkeypatch):
    monkeypatch.setattr(settings, "MODERATORS", ["mod"])
    alert = engine.events.create_alert(AlertType.PROOF_DELETED, "acme", AlertSeverity.ERROR, "gone")
    other = engine.events.create_alert(AlertType.PROOF_DISPUTED, "acme", AlertSeverity.WARNING, "disputed")
    ack = f"{BASE}/monitoring/alerts/{alert.alert_id}/ack"

    assert client.post(f"{BASE}/monitoring/alerts/missing/ack", headers=auth()).status_code == 404
    assert client.post(ack).status_code == 401
    assert client.post(ack, headers=auth("mallory")).status_code == 403
    assert not alert.acknowledged

    assert client.post(ack, headers=auth()).status_code == 200
    assert client.post(f"{BASE}/monitoring/alerts/{other.alert_id}/ack", headers=auth("mod")).status_code == 200

    open_alerts = client.get(f"{BASE}/monitoring/alerts", params={"acknowledged": False}).json()["alerts"]
    assert open_alerts == []


def test_instructions(client):
    response = client.get(f"{BASE}/instructions/github", params={"company_id": "acme"})
    assert response.status_code == 200
    assert "GitHub" in response.json()["instructions"]

    assert client.get(f"{BASE}/instructions/myspace").status_code == 422


def test_api_process_drains_its_own_schedule(process_engine, monkeypatch):
    monkeypatch.setattr(settings, "SCHEDULER_IN_PROCESS", True)
    assert get_engine() is process_engine
    task = process_engine.monitor.schedule_check(
        "acme", task_type=TaskType.SECURITY_SCAN, priority=TaskPriority.CRITICAL,
    )

    with TestClient(app):
        deadline = time.monotonic() + 2
        while process_engine.monitor.get_task(task.id) is not None and time.monotonic() < deadline:
            time.sleep(0.02)

    assert process_engine.monitor.get_task(task.id) is None
    assert process_engine.monitor.failed_tasks() == []
