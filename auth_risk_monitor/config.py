from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Optional, Tuple

from .scoring import ACTION_THRESHOLDS, action_for

COMMON_PASSWORDS: Tuple[str, ...] = ("password", "123456", "password123", "admin", "qwerty")


@dataclass(slots=True)
class EngineConfig:
    """Configuration for the authentication risk engine thresholds and behavior."""

    block_threshold: float = 90.0
    verification_threshold: float = 70.0
    mfa_threshold: float = 40.0
    monitor_threshold: float = 20.0
    max_travel_speed_kmh: float = 1000.0
    device_similarity_threshold: float = 0.8
    attempt_window: timedelta = timedelta(hours=1)
    ip_attempt_limit: int = 20
    email_attempt_limit: int = 10
    failure_window: timedelta = timedelta(hours=24)
    ip_failure_limit: int = 10
    proxy_networks: Tuple[str, ...] = ()
    common_passwords: Tuple[str, ...] = COMMON_PASSWORDS
    history_limit: int = 100
    initial_trust_score: float = 50.0
    profile_idle_ttl: timedelta = timedelta(days=30)
    cleanup_interval: timedelta = timedelta(hours=1)

    def evaluate_action(self, risk_score: float, severities: Iterable[str] = ()) -> str:
        thresholds = (
            (self.block_threshold, ACTION_THRESHOLDS[0][1]),
            (self.verification_threshold, ACTION_THRESHOLDS[1][1]),
            (self.mfa_threshold, ACTION_THRESHOLDS[2][1]),
            (self.monitor_threshold, ACTION_THRESHOLDS[3][1]),
        )
        return action_for(risk_score, severities, thresholds)


@dataclass(slots=True)
class MonitorConfig:
    """Configuration for per-IP threat tracking."""

    buffer_size: int = 10_000
    auto_block_threshold: float = 80.0
    auto_unblock_threshold: float = 30.0
    repeat_failure_threshold: int = 5
    pattern_limit: int = 20
    inactivity_period: timedelta = timedelta(days=7)
    decay_step: float = 5.0
    maintenance_interval: timedelta = timedelta(minutes=5)
    metrics_retention: timedelta = timedelta(hours=24)
    high_risk_threshold: float = 70.0


@dataclass(slots=True)
class AuditConfig:
    max_events: int = 100_000
    retention_days: int = 2555
    default_limit: int = 100
    sensitive_actions: Tuple[str, ...] = ("user_deleted", "org_deleted", "sso_configured")
    regulations: dict = field(
        default_factory=lambda: {
            "authentication": ("GDPR", "CCPA"),
            "authorization": ("SOX", "GDPR"),
            "user_management": ("GDPR", "CCPA", "HIPAA"),
            "organization": ("SOX", "GDPR"),
            "security": ("GDPR", "CCPA", "SOX", "HIPAA"),
        }
    )


def mongodb_uri() -> str:
    return os.getenv("MONGODB_URI", "mongodb://mongo:27017/")


def mongodb_database() -> str:
    return os.getenv("MONGODB_DATABASE", "auth_risk")


def security_data_dir() -> str:
    return os.getenv("SECURITY_DATA_DIR", ".")


def geoip_database_path() -> Optional[str]:
    return os.getenv("GEOIP_DATABASE_PATH") or None


def breach_hash_salt() -> str:
    return os.getenv("BREACH_HASH_SALT", "auth-risk-monitor")


def snapshot_backend() -> str:
    return os.getenv("SECURITY_SNAPSHOT_BACKEND", "file").lower()
