from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .config import EngineConfig
from .credentials import BreachCredentialStore
from .evaluators import (
    CredentialEvaluator,
    DeviceEvaluator,
    GeoVelocityEvaluator,
    IPReputationEvaluator,
    RateLimitEvaluator,
    collect,
)
from .fingerprinting import DeviceFingerprinter
from .geo import GeoLocator, StaticGeoLocator
from .models import GeoLocation, SecurityEvent, UserSecurityProfile
from .profiles import UserProfileStore
from .rate_limiter import SlidingWindowCounter
from .scoring import clamp_score

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskAssessmentEngine:
    def __init__(
        self,
        config: EngineConfig | None = None,
        geo_locator: GeoLocator | None = None,
        breach_store: BreachCredentialStore | None = None,
    ):
        self.config = config or EngineConfig()
        self.geo_locator = geo_locator or StaticGeoLocator()
        self.breach_store = breach_store or BreachCredentialStore(common_passwords=self.config.common_passwords)
        self.profiles = UserProfileStore(self.config.initial_trust_score)
        self.fingerprinter = DeviceFingerprinter(self.config.device_similarity_threshold)
        self.attempts = SlidingWindowCounter(self.config.attempt_window)
        self.failures = SlidingWindowCounter(self.config.failure_window)

        self.credentials = CredentialEvaluator(self.breach_store)
        self.ip_reputation = IPReputationEvaluator(
            self.failures, self.config.ip_failure_limit, self.config.proxy_networks
        )
        self.geo_velocity = GeoVelocityEvaluator(self.geo_locator, self.config.max_travel_speed_kmh)
        self.devices = DeviceEvaluator(self.fingerprinter)
        self.rate_limit = RateLimitEvaluator(
            self.attempts, self.config.ip_attempt_limit, self.config.email_attempt_limit
        )

    def evaluate_authentication_risk(
        self,
        email: str,
        password: str,
        ip_address: str,
        user_agent: str,
        device_fingerprint: Mapping[str, Any] | None = None,
        session_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> SecurityEvent:
        now = timestamp or _utcnow()
        with self.profiles.locked(email):
            profile = self.profiles.get(email)

            factors = collect(
                [
                    self.credentials.assess(email, password),
                    self.ip_reputation.assess(ip_address, now),
                    self.geo_velocity.assess(profile, ip_address, now),
                ]
            )
            if device_fingerprint:
                candidate = self.fingerprinter.normalize(device_fingerprint, user_agent)
                factors.extend(collect([self.devices.assess(profile, candidate)]))
            factors.extend(collect([self.rate_limit.assess(ip_address, email, now)]))
            self.rate_limit.record(ip_address, email, now)

        raw_score = sum(factor.score for factor in factors)
        action = self.config.evaluate_action(raw_score, (factor.severity for factor in factors))
        event = SecurityEvent(
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=now,
            risk_factors=tuple(factors),
            risk_score=clamp_score(raw_score),
            raw_score=raw_score,
            action=action,
            session_id=session_id,
            metadata={"device_fingerprint": dict(device_fingerprint) if device_fingerprint else None},
        )
        logger.info("Risk assessment for %s from %s: %.0f (%s)", email, ip_address, raw_score, action)
        return event

    def update_user_profile(
        self,
        email: str,
        event: SecurityEvent,
        device_fingerprint: Mapping[str, Any] | None = None,
    ) -> UserSecurityProfile:
        now = event.timestamp
        with self.profiles.locked(email):
            profile = self.profiles.get_or_create(email, now)

            if event.action == "allow" and device_fingerprint:
                candidate = self.fingerprinter.normalize(device_fingerprint, event.user_agent)
                known = self.fingerprinter.find_known(profile.known_devices, candidate)
                if known is None:
                    profile.known_devices.append(self.fingerprinter.to_device(candidate, now))
                else:
                    known.last_used = now

            location = self.geo_velocity.lookup(event.ip_address)
            if location is not None:
                self._remember_location(profile, location, now)

            profile.trust_score = self._trust_score(profile.trust_score, event)
            profile.last_login = max(profile.last_login, now)
            profile.record(event, self.config.history_limit)
            return profile

    def record_authentication_failure(self, ip_address: str, timestamp: datetime | None = None) -> int:
        return self.failures.hit(ip_address, timestamp or _utcnow())

    def get_security_recommendations(self, email: str) -> List[str]:
        profile = self.profiles.get(email)
        recommendations: List[str] = []
        if profile is None:
            return recommendations

        if profile.trust_score < 60:
            recommendations.append("Enable multi-factor authentication for enhanced security")
        if len(profile.known_devices) > 5:
            recommendations.append("Review and remove unused devices from your account")
        if any(event.risk_score > 50 for event in profile.risk_history):
            recommendations.append("Recent suspicious activity detected - review your account activity")
        if len(profile.common_locations) > 10:
            recommendations.append("Consider enabling location-based access restrictions")
        return recommendations

    def cleanup_old_data(self, now: datetime | None = None) -> int:
        now = now or _utcnow()
        self.attempts.purge(now)
        self.failures.purge(now)
        return self.profiles.sweep(now, self.config.profile_idle_ttl)

    def profile(self, email: str) -> Optional[UserSecurityProfile]:
        return self.profiles.get(email)

    def summary(self, email: str) -> Dict[str, object]:
        profile = self.profiles.get(email)
        if profile is None:
            return {"known": False, "recommendations": []}
        return {
            "known": True,
            "trust_score": profile.trust_score,
            "last_login": profile.last_login,
            "known_devices": len(profile.known_devices),
            "common_locations": [location.city for location in profile.common_locations],
            "recent_scores": [event.risk_score for event in profile.risk_history[-10:]],
            "recommendations": self.get_security_recommendations(email),
        }

    def _remember_location(self, profile: UserSecurityProfile, location: GeoLocation, now: datetime) -> None:
        existing = next((known for known in profile.common_locations if known.same_place(location)), None)
        if existing is None:
            location.first_seen = now
            location.last_used = now
            location.frequency = 1
            profile.common_locations.append(location)
            existing = location
        else:
            existing.frequency += 1
            existing.last_used = now
        profile.last_location = existing

    @staticmethod
    def _trust_score(current: float, event: SecurityEvent) -> float:
        if event.action == "allow" and event.raw_score < 20:
            return min(100.0, current + 2)
        if event.raw_score > 60:
            return max(0.0, current - 10)
        return current
