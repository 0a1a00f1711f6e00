import csv
import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from auth_risk_monitor import AuditConfig, AuditLogService, AuditQuery, RequestContext, UnsupportedExportFormat

BROWSER = RequestContext(
    ip_address="198.51.100.7",
    user_agent="Mozilla/5.0 (Windows NT 10.0) Chrome/120.0",
)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_service(**overrides):
    clock = FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
    return AuditLogService(AuditConfig(**overrides), clock=clock), clock


def test_auth_events_get_severity_risk_and_compliance():
    service, _ = make_service()
    login = service.log_auth("login", "success", BROWSER, user_id=7, organization_id=1, email="a@example.com")
    failed = service.log_auth("login_failed", "failure", RequestContext(ip_address="198.51.100.8"))
    reset = service.log_auth("password_reset", "success", BROWSER)

    assert login.event_type == "auth.login"
    assert login.severity == "low"
    assert login.details.description == "User login successful for a@example.com"
    assert login.context.device == {"type": "desktop", "os": "Windows", "browser": "Chrome"}
    assert login.compliance.regulations == ("GDPR", "CCPA")
    assert login.compliance.retention_period == 2555
    assert login.risk.score == 10
    assert login.risk.verdict == "low"

    assert failed.severity == "medium"
    assert failed.risk.score == 55
    assert failed.risk.factors == ("Authentication failure", "Suspicious user agent")
    assert failed.risk.verdict == "medium"
    assert reset.severity == "medium"


def test_management_and_security_events():
    service, _ = make_service()
    deleted = service.log_user_management(1, "user_deleted", BROWSER, target_user_id=9, organization_id=1)
    org = service.log_organization(1, "org_created", BROWSER, organization_id=2)
    denied = service.log_authz(3, "read", "invoice", "failure", BROWSER, resource_id="inv-1")
    brute = service.log_security("brute_force", "high", RequestContext(ip_address="192.0.2.9", user_agent="evilbot"))

    assert deleted.severity == "critical"
    assert deleted.details.description == "User account deleted (ID: 9)"
    assert deleted.risk.factors == ("Sensitive operation",)
    assert deleted.compliance.data_classification == "restricted"
    assert org.severity == "high"
    assert denied.severity == "medium"
    assert denied.details.description == "Access denied to invoice"
    assert brute.outcome == "failure"
    assert brute.risk.score == 100
    assert brute.risk.verdict == "high"
    assert brute.risk.factors == ("brute_force", "Bot user agent")
    assert brute.compliance.regulations == ("GDPR", "CCPA", "SOX", "HIPAA")


def test_query_paginates_and_reports_has_more():
    service, clock = make_service()
    for index in range(25):
        service.log_auth("login", "success", BROWSER, user_id=index, organization_id=1)
        clock.advance(minutes=1)

    page = service.query_events(AuditQuery(organization_id=1, limit=10, offset=10))
    assert page.total_count == 25
    assert len(page.events) == 10
    assert page.has_more is True
    assert page.events[0].user_id == 14

    last = service.query_events(AuditQuery(organization_id=1, limit=10, offset=20))
    assert len(last.events) == 5
    assert last.has_more is False

    ascending = service.query_events(AuditQuery(limit=3, sort_order="asc"))
    assert [event.user_id for event in ascending.events] == [0, 1, 2]


def test_query_filters_and_severity_sort():
    service, clock = make_service()
    service.log_auth("login", "success", BROWSER, organization_id=1)
    clock.advance(minutes=1)
    service.log_user_management(1, "user_deleted", BROWSER, organization_id=1)
    clock.advance(minutes=1)
    service.log_auth("login_failed", "failure", BROWSER, organization_id=2)

    failures = service.query_events(AuditQuery(outcomes=["failure"]))
    assert [event.event_type for event in failures.events] == ["auth.login_failed"]

    ranked = service.query_events(AuditQuery(sort_by="severity"))
    assert [event.severity for event in ranked.events] == ["critical", "medium", "low"]

    windowed = service.query_events(
        AuditQuery(start_date=clock.now - timedelta(seconds=90), categories=["user_management", "authentication"])
    )
    assert windowed.total_count == 2


def test_events_are_capped_and_retrievable():
    service, _ = make_service(max_events=3)
    events = [service.log_auth("login", "success", BROWSER, user_id=index) for index in range(5)]

    assert len(service) == 3
    assert service.get_event(events[0].id) is None
    assert service.get_event(events[4].id) == events[4]
    assert events[4].id.startswith("audit_")


def test_compliance_report_scores_relevant_events():
    service, clock = make_service()
    start = clock.now
    service.log_user_management(1, "user_deleted", BROWSER, organization_id=1)
    service.log_auth("login_failed", "failure", BROWSER, organization_id=1)
    service.log_auth("login_failed", "failure", BROWSER, organization_id=1)
    service.log_auth("login_failed", "failure", BROWSER, organization_id=2)
    service.log_authz(1, "read", "report", "success", BROWSER, organization_id=1)
    end = clock.now + timedelta(minutes=1)

    report = service.get_compliance_report(1, "GDPR", start, end)
    assert report["summary"] == {
        "total_events": 4,
        "critical_events": 1,
        "failed_events": 2,
        "compliance_score": 80,
    }
    assert report["categories"] == {"user_management": 1, "authentication": 2, "authorization": 1}
    assert "Investigate and remediate all critical security events" in report["recommendations"]
    assert "Ensure data processing activities are documented and lawful" in report["recommendations"]
    assert "Improve overall security posture to meet compliance requirements" not in report["recommendations"]

    sox = service.get_compliance_report(1, "SOX", start, end)
    assert sox["summary"]["total_events"] == 1
    assert sox["summary"]["compliance_score"] == 100


def test_compliance_score_never_goes_negative():
    service, clock = make_service()
    for _ in range(12):
        service.log_user_management(1, "user_deleted", BROWSER, organization_id=1)

    report = service.get_compliance_report(1, "HIPAA", clock.now, clock.now)
    assert report["summary"]["compliance_score"] == 0
    assert "Verify PHI access controls are properly implemented" in report["recommendations"]


def test_statistics_cover_each_window():
    service, clock = make_service()
    service.log_auth("login_failed", "failure", BROWSER, organization_id=1)
    clock.advance(days=10)
    service.log_user_management(1, "user_created", BROWSER, organization_id=1)
    clock.advance(hours=1)

    stats = service.get_statistics(organization_id=1)
    assert stats["last24h"]["total"] == 1
    assert stats["last24h"]["high"] == 1
    assert stats["last7d"]["total"] == 1
    assert stats["last30d"] == {"total": 2, "successful": 1, "failed": 1, "critical": 0, "high": 1}
    assert stats["categories"] == {"authentication": 1, "user_management": 1}
    assert len(stats["top_risks"]) == 1


def test_json_and_csv_exports():
    service, _ = make_service()
    service.log_auth("login", "success", BROWSER, user_id=5, organization_id=1, email="quote\"d@example.com")
    query = AuditQuery(organization_id=1)

    exported = json.loads(service.export_for_compliance(query, "json"))
    assert exported["total_events"] == 1
    assert exported["query"]["organization_id"] == 1
    assert exported["events"][0]["event_type"] == "auth.login"

    rows = list(csv.reader(io.StringIO(service.export_for_compliance(query, "csv"))))
    assert rows[0][0] == "ID"
    assert rows[1][2] == "auth.login"
    assert rows[1][-1] == 'User login successful for quote"d@example.com'


def test_pdf_export_and_unsupported_format():
    service, _ = make_service()
    service.log_security("suspicious_activity", "medium", BROWSER, threat="<script>")

    document = service.export_for_compliance(AuditQuery(), "pdf")
    assert document.startswith(b"%PDF")

    with pytest.raises(UnsupportedExportFormat):
        service.export_for_compliance(AuditQuery(), "xml")
