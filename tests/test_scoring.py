from datetime import datetime, timedelta, timezone

from auth_risk_monitor.credentials import BreachCredentialStore
from auth_risk_monitor.fingerprinting import DeviceFingerprinter
from auth_risk_monitor.rate_limiter import SlidingWindowCounter
from auth_risk_monitor.request_inspection import inspect_payload
from auth_risk_monitor.scoring import (
    action_for,
    distribution_band,
    security_event_score,
    threat_increment,
    verdict_for,
)


def test_action_thresholds():
    assert action_for(95) == "block"
    assert action_for(90) == "block"
    assert action_for(70) == "require_verification"
    assert action_for(40) == "challenge_mfa"
    assert action_for(20) == "monitor"
    assert action_for(0) == "allow"
    assert action_for(0, ["critical"]) == "block"


def test_threat_increment_escalates_repeat_failures():
    assert threat_increment("low", 0) == 5
    assert threat_increment("high", 5) == 30
    assert threat_increment("high", 6) == 42
    assert threat_increment("medium", 40) == 45


def test_security_event_score_and_bands():
    assert security_event_score("brute_force", "high") == 100
    assert security_event_score("rate_limit_exceeded", "low") == 20
    assert security_event_score("unknown", "medium") == 50
    assert verdict_for(80) == "critical"
    assert verdict_for(29) == "low"
    assert distribution_band(75) == "critical"
    assert distribution_band(24.9) == "low"


def test_sliding_window_forgets_old_hits():
    counter = SlidingWindowCounter(timedelta(minutes=10))
    now = datetime.now(timezone.utc)
    counter.hit("ip:1", now - timedelta(minutes=15))
    assert counter.hit("ip:1", now) == 1
    assert counter.count("ip:1", now + timedelta(minutes=11)) == 0
    assert len(counter) == 0


def test_breach_digests_depend_on_salt():
    first = BreachCredentialStore(salt="one")
    second = BreachCredentialStore(salt="two")
    assert first.hash_email("a@example.com") != second.hash_email("a@example.com")
    assert first.hash_email("A@Example.com ") == first.hash_email("a@example.com")

    second.load_digests([first.hash_email("a@example.com")])
    assert not second.is_breached("a@example.com")
    assert first.is_common_password("QWERTY")


def test_fingerprint_similarity_counts_compared_fields():
    fingerprinter = DeviceFingerprinter()
    candidate = fingerprinter.normalize({"userAgent": "Mozilla/5.0"}, "ignored")
    assert candidate["user_agent"] == "Mozilla/5.0"
    assert candidate["language"] == "en"

    other = dict(candidate, timezone="Europe/Paris")
    assert fingerprinter.similarity(candidate, other) == 0.75
    assert fingerprinter.device_id(candidate) == fingerprinter.device_id(dict(candidate))


def test_request_inspection_patterns():
    kinds = [finding.kind for finding in inspect_payload("1 UNION SELECT password", "Googlebot/2.1")]
    assert kinds == ["sql_injection", "bot"]
    assert [finding.severity for finding in inspect_payload("<script>alert(1)</script>", "Mozilla/5.0")] == ["medium"]
    assert inspect_payload("name=alice", "Mozilla/5.0") == []
