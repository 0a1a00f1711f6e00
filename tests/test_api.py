from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from auth_risk_monitor import AuditLogService, AuditQuery, RequestContext, RiskAssessmentEngine, SecurityMonitor
from auth_risk_monitor.api import create_app
from auth_risk_monitor.credentials import BreachCredentialStore

# Starlette's TestClient reports this as the client host.
CLIENT_IP = "testclient"


class FakeRepository:
    def __init__(self, records=None):
        self.records = records or {}

    def get_assessment(self, task_id):
        return self.records.get(task_id)


def build_client(repository=None):
    engine = RiskAssessmentEngine(breach_store=BreachCredentialStore(salt="test-salt"))
    monitor = SecurityMonitor(load_existing=False)
    audit_log = AuditLogService()
    app = create_app(
        engine,
        audit_log,
        monitor,
        repository=repository or FakeRepository(),
        run_maintenance=False,
    )
    return TestClient(app), app


def build_assess_payload(password: str = "c0rrect-horse") -> dict:
    return {
        "email": "alice@example.com",
        "password": password,
        "device_fingerprint": {
            "timezone": "Europe/Berlin",
            "language": "de-DE",
            "platform": "Linux x86_64",
            "screen": {"width": 1920, "height": 1080},
        },
        "session_id": "session-1",
        "organization_id": 1,
    }


def test_healthcheck():
    client, _ = build_client()
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_risk_assessment_endpoint_allows_clean_login():
    client, app = build_client()
    response = client.post("/auth/risk-assessment", json=build_assess_payload())
    assert response.status_code == 200

    body = response.json()
    assert body["risk_score"] == 0
    assert body["action"] == "allow"
    assert body["risk_factors"] == []

    profile = app.state.engine.profile("alice@example.com")
    assert profile.known_devices[0].user_agent == "testclient"


def test_risk_assessment_reports_factors_and_recommendations():
    client, _ = build_client()
    response = client.post("/auth/risk-assessment", json=build_assess_payload(password="qwerty"))
    body = response.json()

    assert body["action"] == "challenge_mfa"
    assert body["risk_factors"][0]["type"] == "compromised_credential"
    assert body["risk_factors"][0]["evidence"]["type"] == "weak_password"
    assert "Enable multi-factor authentication for enhanced security" in body["recommendations"]


def test_risky_assessment_is_reported_to_monitor_and_audit_log():
    client, app = build_client()
    app.state.engine.breach_store.add_breached_email("alice@example.com")

    response = client.post("/auth/risk-assessment", json=build_assess_payload())
    assert response.json()["action"] == "require_verification"

    assert app.state.monitor.events[-1].type == "suspicious_activity"
    assert app.state.monitor.events[-1].severity == "medium"
    audit_events = app.state.audit_log.query_events(AuditQuery(categories=["security"]))
    assert audit_events.events[0].details.metadata["factors"] == ["compromised_credential"]


def test_risk_assessment_requires_credentials():
    client, _ = build_client()
    response = client.post("/auth/risk-assessment", json={"email": "alice@example.com", "password": ""})
    assert response.status_code == 400


def test_blocked_ip_is_refused():
    client, app = build_client()
    app.state.monitor.record_security_event("session_anomaly", "critical", CLIENT_IP, "Session hijack")

    response = client.post("/auth/risk-assessment", json=build_assess_payload())
    assert response.status_code == 403
    assert response.json() == {"error": "Access denied"}
    assert client.get("/health").status_code == 200


def test_injection_attempts_raise_ip_risk():
    client, app = build_client()
    response = client.get("/monitoring/ip-status/192.0.2.1", params={"q": "1 UNION SELECT password FROM users"})
    assert response.status_code == 200
    assert app.state.monitor.get_ip_risk_score(CLIENT_IP) == 30
    assert app.state.monitor.threats[CLIENT_IP].patterns == ["suspicious_activity:high"]


def test_login_failure_updates_ip_status_and_audit_log():
    client, app = build_client()
    for _ in range(3):
        response = client.post("/auth/login-failure", json={"email": "alice@example.com", "reason": "bad password"})
    body = response.json()
    assert body["ip"] == CLIENT_IP
    assert body["risk_score"] == 45
    assert body["status"] == "safe"
    assert app.state.engine.failures.count(CLIENT_IP, datetime.now(timezone.utc)) == 3

    events = client.get("/audit/events", params={"event_types": "auth.login_failed"}).json()
    assert events["pagination"]["total"] == 3
    assert events["events"][0]["details"]["metadata"]["reason"] == "bad password"


def test_account_profile_summary():
    client, _ = build_client()
    assert client.get("/accounts/alice@example.com/profile").json()["known"] is False

    client.post("/auth/risk-assessment", json=build_assess_payload())
    summary = client.get("/accounts/alice@example.com/profile").json()
    assert summary["known"] is True
    assert summary["known_devices"] == 1
    assert summary["trust_score"] == 52


def test_security_event_endpoint_and_dashboard():
    client, _ = build_client()
    response = client.post(
        "/monitoring/security-event",
        json={"type": "permission_violation", "severity": "high", "description": "Admin route requested"},
    )
    assert response.status_code == 200
    assert response.json()["success"] is True

    invalid = client.post(
        "/monitoring/security-event",
        json={"type": "port_scan", "severity": "high", "description": "Scan"},
    )
    assert invalid.status_code == 422

    dashboard = client.get("/monitoring/security-dashboard").json()
    assert dashboard["success"] is True
    assert dashboard["data"]["overview"]["total_events_24h"] == 1
    assert dashboard["data"]["events_by_type"] == {"permission_violation": 1}


def test_audit_event_lookup_and_event_types():
    client, app = build_client()
    event = app.state.audit_log.log_auth("login", "success", RequestContext(ip_address="10.0.0.1"), user_id=4)
    fetched = client.get(f"/audit/events/{event.id}")
    assert fetched.status_code == 200
    assert fetched.json()["user_id"] == 4
    assert client.get("/audit/events/audit_missing").status_code == 404

    event_types = client.get("/audit/event-types").json()["event_types"]
    assert "security.geo_anomaly" in event_types
    assert len(event_types) == 31


def test_compliance_report_endpoint():
    client, _ = build_client()
    client.post("/auth/login-failure", json={"email": "alice@example.com", "organization_id": 1})
    now = datetime.now(timezone.utc)

    response = client.get(
        "/audit/compliance/gdpr",
        params={
            "organization_id": 1,
            "start_date": (now - timedelta(hours=1)).isoformat(),
            "end_date": (now + timedelta(hours=1)).isoformat(),
        },
    )
    assert response.status_code == 200
    report = response.json()
    assert report["regulation"] == "GDPR"
    assert report["summary"]["failed_events"] == 1
    assert report["summary"]["compliance_score"] == 95


def test_audit_export_formats():
    client, app = build_client()
    client.post("/auth/login-failure", json={"email": "alice@example.com", "organization_id": 1})

    response = client.post("/audit/export", json={"format": "csv", "organization_id": 1})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"].startswith('attachment; filename="audit-export-')
    assert response.text.splitlines()[0].startswith('"ID","Timestamp"')

    # exports are themselves audited
    exports = app.state.audit_log.query_events(AuditQuery(categories=["security"]))
    assert exports.events[0].details.metadata["format"] == "csv"

    rejected = client.post("/audit/export", json={"format": "xml"})
    assert rejected.status_code == 400


def test_async_assessment_is_enqueued(monkeypatch):
    captured = {}

    def fake_enqueue(request):
        captured.update(request)
        return "task-123"

    monkeypatch.setattr("auth_risk_monitor.api.enqueue_assessment", fake_enqueue)
    client, _ = build_client()

    response = client.post("/auth/risk-assessment/async", json=build_assess_payload())
    assert response.status_code == 202
    assert response.json() == {"task_id": "task-123", "status": "queued"}
    assert captured["ip_address"] == CLIENT_IP
    assert captured["device_fingerprint"]["platform"] == "Linux x86_64"


def test_task_status_reads_repository():
    repository = FakeRepository({"task-1": {"task_id": "task-1", "assessment": {"risk_score": 10}}})
    client, _ = build_client(repository)

    assert client.get("/tasks/task-1").json() == {
        "task_id": "task-1",
        "status": "completed",
        "assessment": {"risk_score": 10},
    }
    assert client.get("/tasks/task-2").json()["status"] == "pending"


class ClosableLocator:
    def __init__(self):
        self.closed = False

    def locate(self, ip_address):
        return None

    def close(self):
        self.closed = True


def test_shutdown_closes_geo_database():
    locator = ClosableLocator()
    engine = RiskAssessmentEngine(geo_locator=locator, breach_store=BreachCredentialStore(salt="test-salt"))
    app = create_app(engine, AuditLogService(), SecurityMonitor(load_existing=False), run_maintenance=False)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert locator.closed is False
    assert locator.closed is True
