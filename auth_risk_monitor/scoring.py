"""Score tables shared by the risk engine, the audit log and the security monitor."""

from __future__ import annotations

from typing import Iterable, Sequence, Tuple

SEVERITIES: Tuple[str, ...] = ("low", "medium", "high", "critical")
SEVERITY_RANK = {severity: rank for rank, severity in enumerate(SEVERITIES)}

# Per-event increments applied to an IP's threat score.
THREAT_INCREMENTS = {"low": 5, "medium": 15, "high": 30, "critical": 50}

SECURITY_BASE_SCORES = {
    "suspicious_activity": 60,
    "rate_limit_exceeded": 40,
    "invalid_token": 50,
    "session_hijack": 90,
    "brute_force": 80,
    "geo_anomaly": 70,
}
SECURITY_SEVERITY_MULTIPLIERS = {"low": 0.5, "medium": 1.0, "high": 1.5, "critical": 2.0}

ACTION_THRESHOLDS: Sequence[Tuple[float, str]] = (
    (90, "block"),
    (70, "require_verification"),
    (40, "challenge_mfa"),
    (20, "monitor"),
)
VERDICT_THRESHOLDS: Sequence[Tuple[float, str]] = (
    (80, "critical"),
    (60, "high"),
    (30, "medium"),
)
DISTRIBUTION_BANDS: Sequence[Tuple[float, str]] = (
    (75, "critical"),
    (50, "high"),
    (25, "medium"),
)


def clamp_score(score: float, lower: float = 0.0, upper: float = 100.0) -> float:
    return max(lower, min(upper, score))


def classify(score: float, thresholds: Sequence[Tuple[float, str]], default: str) -> str:
    """Return the label of the first ``(minimum, label)`` pair the score reaches.

    Thresholds must be ordered from the highest minimum to the lowest.
    """
    for minimum, label in thresholds:
        if score >= minimum:
            return label
    return default


def action_for(
    score: float,
    severities: Iterable[str] = (),
    thresholds: Sequence[Tuple[float, str]] = ACTION_THRESHOLDS,
) -> str:
    if any(severity == "critical" for severity in severities):
        return "block"
    return classify(score, thresholds, "allow")


def verdict_for(score: float) -> str:
    return classify(score, VERDICT_THRESHOLDS, "low")


def distribution_band(score: float) -> str:
    return classify(score, DISTRIBUTION_BANDS, "low")


def threat_increment(severity: str, failed_attempts: int, repeat_threshold: int = 5) -> int:
    increment = THREAT_INCREMENTS.get(severity, 0)
    if failed_attempts > repeat_threshold:
        increment += min(failed_attempts * 2, 30)
    return increment


def security_event_score(action: str, severity: str) -> int:
    base = SECURITY_BASE_SCORES.get(action, 50)
    multiplier = SECURITY_SEVERITY_MULTIPLIERS.get(severity, 1.0)
    return min(100, round(base * multiplier))


def severity_rank(severity: str) -> int:
    return SEVERITY_RANK.get(severity, -1)
