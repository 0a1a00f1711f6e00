"""Authentication risk scoring, IP threat monitoring and audit trail."""

from .audit_log import AuditLogService, UnsupportedExportFormat
from .config import AuditConfig, EngineConfig, MonitorConfig
from .models import (
    AuditEvent,
    AuditQuery,
    AuditQueryResult,
    GeoLocation,
    MonitorEvent,
    RequestContext,
    RiskFactor,
    SecurityEvent,
    ThreatIntelligence,
    UserSecurityProfile,
)
from .risk_engine import RiskAssessmentEngine
from .security_monitor import SecurityMonitor

__all__ = [
    "AuditConfig",
    "AuditEvent",
    "AuditLogService",
    "AuditQuery",
    "AuditQueryResult",
    "EngineConfig",
    "GeoLocation",
    "MonitorConfig",
    "MonitorEvent",
    "RequestContext",
    "RiskAssessmentEngine",
    "RiskFactor",
    "SecurityEvent",
    "SecurityMonitor",
    "ThreatIntelligence",
    "UnsupportedExportFormat",
    "UserSecurityProfile",
]
