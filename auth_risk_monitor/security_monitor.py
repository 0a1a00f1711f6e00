"""Per-IP threat intelligence with automatic blocking and decay."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import MonitorConfig
from .locking import KeyedLock
from .models import MonitorEvent, SecurityMetrics, ThreatIntelligence
from .persistence import SnapshotStore
from .request_inspection import inspect_payload
from .scoring import SEVERITIES, distribution_band, threat_increment

logger = logging.getLogger(__name__)

MONITOR_EVENT_TYPES = (
    "auth_failure",
    "rate_limit",
    "suspicious_activity",
    "permission_violation",
    "data_access",
    "session_anomaly",
)

AlertHook = Callable[[Mapping[str, Any]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityMonitor:
    def __init__(
        self,
        config: MonitorConfig | None = None,
        store: SnapshotStore | None = None,
        alert_hook: AlertHook | None = None,
        load_existing: bool = True,
    ):
        self.config = config or MonitorConfig()
        self.store = store
        self.alert_hook = alert_hook
        self.events: List[MonitorEvent] = []
        self.threats: Dict[str, ThreatIntelligence] = {}
        self.metrics: List[SecurityMetrics] = []
        self._lock = threading.RLock()
        self._ip_locks = KeyedLock()
        if load_existing and store is not None:
            self.load_existing_data()

    # -- recording -----------------------------------------------------------

    def record_security_event(
        self,
        type: str,
        severity: str,
        ip: str,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> MonitorEvent:
        if type not in MONITOR_EVENT_TYPES:
            raise ValueError(f"Unknown security event type: {type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        event = MonitorEvent(
            id=str(uuid.uuid4()),
            type=type,
            severity=severity,
            timestamp=timestamp or _utcnow(),
            ip=ip,
            description=description,
            user_agent=user_agent,
            user_id=user_id,
            metadata=dict(metadata) if metadata else None,
        )
        with self._lock:
            self.events.append(event)
            overflow = len(self.events) - self.config.buffer_size
            if overflow > 0:
                del self.events[:overflow]

        self._update_threat_intelligence(ip, type, severity, event.timestamp)
        if severity == "critical":
            self._handle_critical_event(event)

        logger.info("%s security event: %s from %s", severity.upper(), description, ip)
        return event

    def _update_threat_intelligence(self, ip: str, type: str, severity: str, now: datetime) -> ThreatIntelligence:
        with self._ip_locks.hold(ip):
            threat = self.threats.get(ip)
            if threat is None:
                threat = self.threats[ip] = ThreatIntelligence(ip=ip, last_seen=now)

            threat.last_seen = now
            if type == "auth_failure":
                threat.failed_attempts += 1

            increment = threat_increment(severity, threat.failed_attempts, self.config.repeat_failure_threshold)
            threat.risk_score = min(threat.risk_score + increment, 100.0)
            threat.patterns.append(f"{type}:{severity}")
            if len(threat.patterns) > self.config.pattern_limit:
                del threat.patterns[: len(threat.patterns) - self.config.pattern_limit]

            newly_blocked = threat.risk_score >= self.config.auto_block_threshold and not threat.blocked
            if newly_blocked:
                threat.blocked = True
        if newly_blocked:
            logger.warning("Auto-blocked high-risk IP %s (risk score %.0f)", ip, threat.risk_score)
            self._alert("ip_blocked", {"threat": threat.to_dict()})
        return threat

    def _handle_critical_event(self, event: MonitorEvent) -> None:
        logger.warning("Critical security event: %s", event.description)
        with self._ip_locks.hold(event.ip):
            threat = self.threats.get(event.ip)
            if threat is not None:
                threat.blocked = True
                threat.risk_score = 100.0

        if self.store is not None:
            self.store.append("critical_events", event.to_dict())
        self._alert("critical_event", {"event": event.to_dict()})

    def _alert(self, kind: str, payload: Mapping[str, Any]) -> None:
        if self.alert_hook is not None:
            self.alert_hook({"kind": kind, **payload})

    # -- request-time heuristics ---------------------------------------------

    def inspect_request(
        self,
        ip: str,
        path: str,
        query: str = "",
        body: str = "",
        user_agent: Optional[str] = None,
    ) -> bool:
        """Run request heuristics; returns False when the request must be refused."""
        if self.is_ip_blocked(ip):
            self.record_security_event(
                "suspicious_activity", "high", ip, "Blocked IP attempted access", {"endpoint": path}
            )
            return False

        agent = user_agent or "unknown"
        for finding in inspect_payload(query + body, agent):
            if finding.kind == "bot":
                metadata: Dict[str, Any] = {"user_agent": agent}
            else:
                metadata = {"endpoint": path, "query": query, "body_length": len(body)}
            self.record_security_event(
                "suspicious_activity", finding.severity, ip, finding.description, metadata, user_agent
            )
        return True

    # -- queries -------------------------------------------------------------

    def is_ip_blocked(self, ip: str) -> bool:
        threat = self.threats.get(ip)
        return bool(threat and threat.blocked)

    def get_ip_risk_score(self, ip: str) -> float:
        threat = self.threats.get(ip)
        return threat.risk_score if threat else 0.0

    def get_ip_status(self, ip: str) -> Dict[str, Any]:
        blocked = self.is_ip_blocked(ip)
        risk_score = self.get_ip_risk_score(ip)
        if blocked:
            status = "blocked"
        elif risk_score > self.config.high_risk_threshold:
            status = "high-risk"
        else:
            status = "safe"
        return {"ip": ip, "blocked": blocked, "risk_score": risk_score, "status": status}

    def get_security_dashboard(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or _utcnow()
        with self._lock:
            events = list(self.events)
        threats = list(self.threats.values())

        last_24h = [event for event in events if event.timestamp > now - timedelta(hours=24)]
        last_hour = [event for event in events if event.timestamp > now - timedelta(hours=1)]
        ranked = sorted(threats, key=lambda threat: threat.risk_score, reverse=True)

        distribution = {band: 0 for band in SEVERITIES}
        for threat in threats:
            distribution[distribution_band(threat.risk_score)] += 1

        return {
            "overview": {
                "total_events_24h": len(last_24h),
                "critical_events_24h": sum(1 for event in last_24h if event.severity == "critical"),
                "events_last_hour": len(last_hour),
                "blocked_ips": sum(1 for threat in threats if threat.blocked),
                "high_risk_ips": sum(1 for threat in threats if threat.risk_score >= self.config.high_risk_threshold),
            },
            "recent_events": [event.to_dict() for event in reversed(events[-10:])],
            "top_threats": [threat.to_dict() for threat in ranked[:10]],
            "events_by_type": dict(Counter(event.type for event in last_24h)),
            "risk_distribution": distribution,
        }

    # -- maintenance ---------------------------------------------------------

    def generate_metrics(self, now: Optional[datetime] = None) -> SecurityMetrics:
        now = now or _utcnow()
        threats = list(self.threats.values())
        with self._lock:
            metrics = SecurityMetrics(
                timestamp=now,
                total_events=len(self.events),
                critical_events=sum(1 for event in self.events if event.severity == "critical"),
                blocked_ips=sum(1 for threat in threats if threat.blocked),
                average_risk_score=(sum(threat.risk_score for threat in threats) / len(threats)) if threats else 0.0,
                top_threats=[
                    threat.ip for threat in sorted(threats, key=lambda threat: threat.risk_score, reverse=True)[:5]
                ],
            )
            self.metrics.append(metrics)
            cutoff = now - self.config.metrics_retention
            self.metrics = [entry for entry in self.metrics if entry.timestamp > cutoff]
        return metrics

    def perform_maintenance(self, now: Optional[datetime] = None) -> List[str]:
        """Decay inactive IPs; returns the addresses unblocked by this pass."""
        now = now or _utcnow()
        cutoff = now - self.config.inactivity_period
        unblocked: List[str] = []
        for ip in list(self.threats):
            with self._ip_locks.hold(ip):
                threat = self.threats[ip]
                if threat.last_seen >= cutoff:
                    continue
                threat.risk_score = max(0.0, threat.risk_score - self.config.decay_step)
                if threat.blocked and threat.risk_score < self.config.auto_unblock_threshold:
                    threat.blocked = False
                    unblocked.append(ip)
                    logger.info("Auto-unblocked IP %s (risk reduced to %.0f)", ip, threat.risk_score)
        return unblocked

    def run_maintenance(self, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        self.generate_metrics(now)
        self.perform_maintenance(now)
        self.save_data()

    def save_data(self) -> None:
        if self.store is None:
            return
        with self._lock:
            events = [event.to_dict() for event in self.events]
            metrics = [entry.to_dict() for entry in self.metrics]
        threats = [threat.to_dict() for threat in list(self.threats.values())]
        self.store.save("events", events)
        self.store.save("threats", threats)
        self.store.save("metrics", metrics)

    def load_existing_data(self) -> None:
        if self.store is None:
            return
        try:
            events = [MonitorEvent.from_dict(item) for item in self.store.load("events") or []]
            threats = [ThreatIntelligence.from_dict(item) for item in self.store.load("threats") or []]
            metrics = [SecurityMetrics.from_dict(item) for item in self.store.load("metrics") or []]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Starting with fresh security data: %s", exc)
            return
        with self._lock:
            self.events = events[-self.config.buffer_size :]
            self.metrics = metrics
        self.threats = {threat.ip: threat for threat in threats}

    def stop(self) -> None:
        self.save_data()
