from datetime import datetime, timedelta, timezone

from auth_risk_monitor import GeoLocation, RiskAssessmentEngine, SecurityMonitor
from auth_risk_monitor.credentials import BreachCredentialStore
from auth_risk_monitor.geo import StaticGeoLocator


def build_engine() -> RiskAssessmentEngine:
    locator = StaticGeoLocator(
        {
            "203.0.113.10": GeoLocation("US", "New York", "New York", 40.7128, -74.0060),
            "198.51.100.20": GeoLocation("SG", "Singapore", "Singapore", 1.3521, 103.8198),
        }
    )
    breaches = BreachCredentialStore(salt="demo")
    breaches.add_breached_email("leaked@example.com")
    return RiskAssessmentEngine(geo_locator=locator, breach_store=breaches)


def print_event(label: str, event) -> None:
    print(f"{label}: score={event.risk_score:.0f} action={event.action}")
    for factor in event.risk_factors:
        print(f"  - {factor.type} ({factor.severity}, {factor.score:.0f}): {factor.description}")


def main() -> None:
    now = datetime.now(timezone.utc)
    engine = build_engine()
    monitor = SecurityMonitor(load_existing=False)
    fingerprint = {"timezone": "America/New_York", "language": "en-US", "platform": "MacIntel"}

    first = engine.evaluate_authentication_risk(
        "alice@example.com", "c0rrect-horse", "203.0.113.10", "Mozilla/5.0", fingerprint, timestamp=now
    )
    engine.update_user_profile("alice@example.com", first, fingerprint)
    print_event("Baseline login", first)

    travel = engine.evaluate_authentication_risk(
        "alice@example.com",
        "c0rrect-horse",
        "198.51.100.20",
        "Mozilla/5.0",
        {"timezone": "Asia/Singapore", "language": "en-SG", "platform": "Win32"},
        timestamp=now + timedelta(minutes=30),
    )
    engine.update_user_profile("alice@example.com", travel)
    print_event("Login 30 minutes later from Singapore", travel)
    print("Recommendations:", engine.get_security_recommendations("alice@example.com"))

    leaked = engine.evaluate_authentication_risk(
        "leaked@example.com", "password", "198.51.100.20", "Mozilla/5.0", timestamp=now
    )
    print_event("Breached account with weak password", leaked)

    for _ in range(4):
        monitor.record_security_event("auth_failure", "high", "198.51.100.20", "Failed login")
    print("IP status:", monitor.get_ip_status("198.51.100.20"))


if __name__ == "__main__":
    main()
