from __future__ import annotations

import ipaddress
import logging
import math
from datetime import datetime
from typing import Any, Iterable, List, Mapping

from .credentials import BreachCredentialStore
from .fingerprinting import DeviceFingerprinter
from .geo import GeoLocator, haversine_distance
from .models import GeoLocation, RiskFactor, UserSecurityProfile
from .rate_limiter import SlidingWindowCounter

logger = logging.getLogger(__name__)


class CredentialEvaluator:
    def __init__(self, store: BreachCredentialStore):
        self.store = store

    def assess(self, email: str, password: str) -> RiskFactor | None:
        if self.store.is_breached(email):
            return RiskFactor(
                type="compromised_credential",
                severity="high",
                score=70.0,
                description="Email found in known data breaches",
                evidence={"type": "email_breach", "source": "breach_database"},
            )
        if self.store.is_common_password(password):
            return RiskFactor(
                type="compromised_credential",
                severity="medium",
                score=40.0,
                description="Password found in common password lists",
                evidence={"type": "weak_password", "strength": "low"},
            )
        return None


class IPReputationEvaluator:
    def __init__(
        self,
        failures: SlidingWindowCounter,
        failure_limit: int,
        proxy_networks: Iterable[str] = (),
    ):
        self.failures = failures
        self.failure_limit = failure_limit
        self.proxy_networks = [ipaddress.ip_network(network, strict=False) for network in proxy_networks]

    def assess(self, ip_address: str, now: datetime) -> RiskFactor | None:
        failure_count = self.failures.count(ip_address, now)
        if failure_count > self.failure_limit:
            return RiskFactor(
                type="suspicious_pattern",
                severity="high",
                score=60.0,
                description="IP address has high failure rate",
                evidence={"failure_count": failure_count, "time_window": _window_label(self.failures)},
            )
        if self.is_proxy(ip_address):
            return RiskFactor(
                type="suspicious_pattern",
                severity="medium",
                score=30.0,
                description="Login from VPN or proxy service",
                evidence={"type": "vpn_proxy", "provider": "unknown"},
            )
        return None

    def is_proxy(self, ip_address: str) -> bool:
        try:
            address = ipaddress.ip_address(ip_address)
        except ValueError:
            return False
        return any(address in network for network in self.proxy_networks)


class GeoVelocityEvaluator:
    def __init__(self, locator: GeoLocator, max_speed_kmh: float):
        self.locator = locator
        self.max_speed_kmh = max_speed_kmh

    def assess(self, profile: UserSecurityProfile | None, ip_address: str, now: datetime) -> RiskFactor | None:
        if profile is None or profile.last_location is None:
            return None
        current = self.lookup(ip_address)
        if current is None:
            return None

        previous = profile.last_location
        distance = haversine_distance(previous, current)
        if distance == 0:
            return None
        hours = (now - profile.last_login).total_seconds() / 3600
        if hours < 0:
            # assessment older than the last login
            return None
        speed = distance / hours if hours > 0 else math.inf
        if speed <= self.max_speed_kmh:
            return None
        return RiskFactor(
            type="geo_velocity",
            severity="high",
            score=80.0,
            description="Impossible travel detected between login locations",
            evidence={
                "distance_km": round(distance, 2),
                "time_hours": round(hours, 4),
                "speed_kmh": round(speed, 2) if math.isfinite(speed) else None,
                "previous_location": previous.city,
                "current_location": current.city,
            },
        )

    def lookup(self, ip_address: str) -> GeoLocation | None:
        try:
            return self.locator.locate(ip_address)
        except Exception as exc:  # pluggable locator
            logger.warning("Geo lookup failed for %s, skipping geo velocity check: %s", ip_address, exc)
            return None


class DeviceEvaluator:
    def __init__(self, fingerprinter: DeviceFingerprinter):
        self.fingerprinter = fingerprinter

    def assess(self, profile: UserSecurityProfile | None, candidate: Mapping[str, Any]) -> RiskFactor | None:
        if profile is None:
            return None
        if self.fingerprinter.find_known(profile.known_devices, candidate) is not None:
            return None
        return RiskFactor(
            type="device_change",
            severity="medium",
            score=50.0,
            description="Login from unrecognized device",
            evidence={
                "new_device": True,
                "known_device_count": len(profile.known_devices),
                "fingerprint": self.fingerprinter.sanitize(candidate),
            },
        )


class RateLimitEvaluator:
    def __init__(self, attempts: SlidingWindowCounter, ip_limit: int, email_limit: int):
        self.attempts = attempts
        self.ip_limit = ip_limit
        self.email_limit = email_limit

    def assess(self, ip_address: str, email: str, now: datetime) -> RiskFactor | None:
        ip_attempts = self.attempts.count(_ip_key(ip_address), now)
        email_attempts = self.attempts.count(_email_key(email), now)
        window = _window_label(self.attempts)

        if ip_attempts > self.ip_limit:
            return RiskFactor(
                type="rate_limit",
                severity="high",
                score=90.0,
                description="Excessive login attempts from IP address",
                evidence={"attempts": ip_attempts, "time_window": window, "type": "ip"},
            )
        if email_attempts > self.email_limit:
            return RiskFactor(
                type="rate_limit",
                severity="medium",
                score=60.0,
                description="Multiple login attempts for user account",
                evidence={"attempts": email_attempts, "time_window": window, "type": "user"},
            )
        return None

    def record(self, ip_address: str, email: str, now: datetime) -> None:
        self.attempts.hit(_ip_key(ip_address), now)
        self.attempts.hit(_email_key(email), now)


def collect(factors: Iterable[RiskFactor | None]) -> List[RiskFactor]:
    return [factor for factor in factors if factor is not None]


def _ip_key(ip_address: str) -> str:
    return f"ip:{ip_address}"


def _email_key(email: str) -> str:
    return f"email:{email.strip().lower()}"


def _window_label(counter: SlidingWindowCounter) -> str:
    hours = counter.window.total_seconds() / 3600
    return f"{hours:g}h"
