from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True, slots=True)
class RiskFactor:
    type: str
    severity: str
    score: float
    description: str
    evidence: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    """Outcome of one authentication risk assessment."""

    email: str
    ip_address: str
    user_agent: str
    timestamp: datetime
    risk_factors: Tuple[RiskFactor, ...]
    risk_score: float
    raw_score: float
    action: str
    session_id: Optional[str] = None
    event: str = "authentication_attempt"
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DeviceFingerprint:
    id: str
    user_agent: str
    timezone: str
    language: str
    platform: str
    first_seen: datetime
    last_used: datetime
    screen: Mapping[str, int] = field(default_factory=lambda: {"width": 0, "height": 0})
    plugins: List[str] = field(default_factory=list)
    verified: bool = False


@dataclass(slots=True)
class GeoLocation:
    country: str
    region: str
    city: str
    latitude: float
    longitude: float
    accuracy: float = 0.0
    first_seen: Optional[datetime] = None
    last_used: Optional[datetime] = None
    frequency: int = 0

    def same_place(self, other: "GeoLocation") -> bool:
        return self.city == other.city and self.country == other.country


@dataclass(slots=True)
class UserSecurityProfile:
    email: str
    last_login: datetime
    trust_score: float = 50.0
    known_devices: List[DeviceFingerprint] = field(default_factory=list)
    common_locations: List[GeoLocation] = field(default_factory=list)
    last_location: Optional[GeoLocation] = None
    risk_history: List[SecurityEvent] = field(default_factory=list)

    def record(self, event: SecurityEvent, limit: int) -> None:
        self.risk_history.append(event)
        if len(self.risk_history) > limit:
            del self.risk_history[: len(self.risk_history) - limit]


@dataclass(slots=True)
class ThreatIntelligence:
    ip: str
    last_seen: datetime
    risk_score: float = 0.0
    failed_attempts: int = 0
    patterns: List[str] = field(default_factory=list)
    blocked: bool = False
    country: Optional[str] = None
    organization: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_seen"] = self.last_seen.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ThreatIntelligence":
        payload = dict(data)
        payload["last_seen"] = _parse_datetime(payload["last_seen"])
        return cls(**payload)


@dataclass(slots=True)
class MonitorEvent:
    """Security event tracked by the IP threat monitor."""

    id: str
    type: str
    severity: str
    timestamp: datetime
    ip: str
    description: str
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Optional[Mapping[str, Any]] = None
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MonitorEvent":
        payload = dict(data)
        payload["timestamp"] = _parse_datetime(payload["timestamp"])
        return cls(**payload)


@dataclass(slots=True)
class SecurityMetrics:
    timestamp: datetime
    total_events: int
    critical_events: int
    blocked_ips: int
    average_risk_score: float
    top_threats: List[str]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SecurityMetrics":
        payload = dict(data)
        payload["timestamp"] = _parse_datetime(payload["timestamp"])
        return cls(**payload)


@dataclass(slots=True)
class RequestContext:
    ip_address: str
    user_agent: Optional[str] = None
    location: Optional[Mapping[str, str]] = None


@dataclass(frozen=True, slots=True)
class AuditDetails:
    description: str
    metadata: Optional[Mapping[str, Any]] = None
    before: Optional[Mapping[str, Any]] = None
    after: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True, slots=True)
class AuditContext:
    ip_address: str
    user_agent: str = ""
    location: Optional[Mapping[str, str]] = None
    device: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AuditRisk:
    score: float
    factors: Tuple[str, ...]
    verdict: str


@dataclass(frozen=True, slots=True)
class ComplianceInfo:
    regulations: Tuple[str, ...]
    retention_period: int
    data_classification: str


@dataclass(frozen=True, slots=True)
class AuditEvent:
    id: str
    timestamp: datetime
    event_type: str
    category: str
    action: str
    resource: str
    outcome: str
    severity: str
    details: AuditDetails
    context: AuditContext
    risk: AuditRisk
    compliance: ComplianceInfo
    organization_id: Optional[int] = None
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    resource_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(slots=True)
class AuditQuery:
    organization_id: Optional[int] = None
    user_id: Optional[int] = None
    event_types: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    outcomes: Optional[List[str]] = None
    severities: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    ip_address: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0
    sort_by: str = "timestamp"
    sort_order: str = "desc"


@dataclass(slots=True)
class AuditQueryResult:
    events: List[AuditEvent]
    total_count: int
    has_more: bool
