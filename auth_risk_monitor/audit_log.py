"""Structured audit trail for authentication and authorization activity.

Events are immutable and kept in an append-only in-memory list capped at
``AuditConfig.max_events``. The service can filter, paginate, summarise and
export them for compliance reviews.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import secrets
import threading
import time
from collections import Counter
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Tuple
from xml.sax.saxutils import escape

from fastapi.encoders import jsonable_encoder
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .config import AuditConfig
from .models import (
    AuditContext,
    AuditDetails,
    AuditEvent,
    AuditQuery,
    AuditQueryResult,
    AuditRisk,
    ComplianceInfo,
    RequestContext,
)
from .scoring import security_event_score, severity_rank, verdict_for

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv", "pdf")

CSV_HEADERS = [
    "ID",
    "Timestamp",
    "Event Type",
    "Category",
    "Action",
    "Resource",
    "Outcome",
    "Severity",
    "User ID",
    "Organization ID",
    "IP Address",
    "Risk Score",
    "Description",
]
PDF_COLUMNS = (
    "Timestamp",
    "Event Type",
    "Outcome",
    "Severity",
    "User ID",
    "IP Address",
    "Risk Score",
    "Description",
)

EVENT_TYPES: Tuple[str, ...] = (
    "auth.login",
    "auth.logout",
    "auth.login_failed",
    "auth.password_reset",
    "auth.mfa_challenge",
    "auth.mfa_success",
    "auth.mfa_failed",
    "authz.access_granted",
    "authz.access_denied",
    "authz.permission_check",
    "authz.role_assigned",
    "authz.role_removed",
    "user.user_created",
    "user.user_updated",
    "user.user_deleted",
    "user.user_invited",
    "user.user_activated",
    "user.user_deactivated",
    "org.org_created",
    "org.org_updated",
    "org.org_deleted",
    "org.member_added",
    "org.member_removed",
    "org.role_changed",
    "org.sso_configured",
    "security.suspicious_activity",
    "security.rate_limit_exceeded",
    "security.invalid_token",
    "security.session_hijack",
    "security.brute_force",
    "security.geo_anomaly",
)

_AUTH_DESCRIPTIONS = {
    "logout": "User logout{user}",
    "login_failed": "Failed login attempt{user}",
    "password_reset": "Password reset requested{user}",
    "mfa_challenge": "MFA challenge initiated{user}",
    "mfa_success": "MFA verification successful{user}",
    "mfa_failed": "MFA verification failed{user}",
}
_USER_DESCRIPTIONS = {
    "user_created": "User account created",
    "user_updated": "User account updated",
    "user_deleted": "User account deleted",
    "user_invited": "User invitation sent",
    "user_activated": "User account activated",
    "user_deactivated": "User account deactivated",
}
_ORG_DESCRIPTIONS = {
    "org_created": "Organization created",
    "org_updated": "Organization updated",
    "org_deleted": "Organization deleted",
    "member_added": "Member added to organization",
    "member_removed": "Member removed from organization",
    "role_changed": "Member role changed",
    "sso_configured": "SSO configuration updated",
}
_SECURITY_DESCRIPTIONS = {
    "suspicious_activity": "Suspicious activity detected{threat}",
    "rate_limit_exceeded": "Rate limit exceeded",
    "invalid_token": "Invalid authentication token used",
    "session_hijack": "Potential session hijacking detected{threat}",
    "brute_force": "Brute force attack detected",
    "geo_anomaly": "Geographical login anomaly detected{threat}",
}


class UnsupportedExportFormat(ValueError):
    pass


def parse_user_agent(user_agent: str) -> Dict[str, str]:
    device: Dict[str, str] = {}
    if "Mobile" in user_agent:
        device["type"] = "mobile"
    elif "Tablet" in user_agent:
        device["type"] = "tablet"
    else:
        device["type"] = "desktop"

    for marker, os_name in (
        ("Windows", "Windows"),
        ("Mac", "macOS"),
        ("Linux", "Linux"),
        ("Android", "Android"),
        ("iOS", "iOS"),
    ):
        if marker in user_agent:
            device["os"] = os_name
            break

    for marker in ("Chrome", "Firefox", "Safari", "Edge"):
        if marker in user_agent:
            device["browser"] = marker
            break
    return device


class AuditLogService:
    def __init__(self, config: AuditConfig | None = None, clock: Callable[[], datetime] | None = None):
        self.config = config or AuditConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    # -- recording -----------------------------------------------------------

    def log_auth(
        self,
        action: str,
        outcome: str,
        request: RequestContext,
        user_id: int | None = None,
        organization_id: int | None = None,
        session_id: str | None = None,
        email: str | None = None,
        provider: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        severity = self._auth_severity(action, outcome)
        return self._record(
            prefix="auth",
            category="authentication",
            action=action,
            outcome=outcome,
            severity=severity,
            resource="user_session",
            resource_id=str(user_id) if user_id is not None else None,
            description=self._auth_description(action, outcome, email),
            metadata={"provider": provider, "email": email, **(metadata or {})},
            request=request,
            user_id=user_id,
            organization_id=organization_id,
            session_id=session_id,
            classification="confidential",
        )

    def log_authz(
        self,
        user_id: int,
        action: str,
        resource: str,
        outcome: str,
        request: RequestContext,
        organization_id: int | None = None,
        resource_id: str | None = None,
        permission: str | None = None,
        role: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        result = "granted" if outcome == "success" else "denied"
        return self._record(
            prefix="authz",
            category="authorization",
            action=action,
            outcome=outcome,
            severity="medium" if outcome == "failure" else "low",
            resource=resource,
            resource_id=resource_id,
            description=f"Access {result} to {resource}",
            metadata={"permission": permission, "role": role, **(metadata or {})},
            request=request,
            user_id=user_id,
            organization_id=organization_id,
            classification="confidential",
        )

    def log_user_management(
        self,
        admin_user_id: int,
        action: str,
        request: RequestContext,
        target_user_id: int | None = None,
        organization_id: int | None = None,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        target = f" (ID: {target_user_id})" if target_user_id is not None else ""
        description = _USER_DESCRIPTIONS.get(action, f"User management action: {action}") + target
        return self._record(
            prefix="user",
            category="user_management",
            action=action,
            outcome="success",
            severity=_ranked_severity(
                action,
                critical=("user_deleted",),
                high=("user_created", "user_deactivated"),
                medium=("user_updated", "user_invited"),
            ),
            resource="user",
            resource_id=str(target_user_id) if target_user_id is not None else None,
            description=description,
            metadata=metadata,
            before=before,
            after=after,
            request=request,
            user_id=admin_user_id,
            organization_id=organization_id,
            classification="restricted",
        )

    def log_organization(
        self,
        user_id: int,
        action: str,
        request: RequestContext,
        organization_id: int | None = None,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        return self._record(
            prefix="org",
            category="organization",
            action=action,
            outcome="success",
            severity=_ranked_severity(
                action,
                critical=("org_deleted",),
                high=("org_created", "sso_configured"),
                medium=("member_removed", "role_changed"),
            ),
            resource="organization",
            resource_id=str(organization_id) if organization_id is not None else None,
            description=_ORG_DESCRIPTIONS.get(action, f"Organization action: {action}"),
            metadata=metadata,
            before=before,
            after=after,
            request=request,
            user_id=user_id,
            organization_id=organization_id,
            classification="confidential",
        )

    def log_security(
        self,
        action: str,
        severity: str,
        request: RequestContext,
        user_id: int | None = None,
        organization_id: int | None = None,
        threat: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        threat_info = f" ({threat})" if threat else ""
        template = _SECURITY_DESCRIPTIONS.get(action)
        if template is None:
            description = f"Security event: {action}{threat_info}"
        else:
            description = template.format(threat=threat_info)
        user_agent = request.user_agent or ""
        factors = [action]
        if not user_agent:
            factors.append("No user agent")
        if "bot" in user_agent:
            factors.append("Bot user agent")

        risk = AuditRisk(
            score=security_event_score(action, severity),
            factors=tuple(factors),
            verdict=severity,
        )
        return self._record(
            prefix="security",
            category="security",
            action=action,
            outcome="failure",
            severity=severity,
            resource="security_event",
            description=description,
            metadata=metadata,
            request=request,
            user_id=user_id,
            organization_id=organization_id,
            classification="restricted",
            risk=risk,
        )

    # -- reading -------------------------------------------------------------

    def query_events(self, query: AuditQuery) -> AuditQueryResult:
        with self._lock:
            events = list(self._events)

        events = [event for event in events if _matches(event, query)]
        reverse = query.sort_order != "asc"
        events.sort(key=_sort_key(query.sort_by), reverse=reverse)

        limit = query.limit if query.limit is not None else self.config.default_limit
        offset = max(query.offset, 0)
        total = len(events)
        return AuditQueryResult(
            events=events[offset : offset + limit],
            total_count=total,
            has_more=offset + limit < total,
        )

    def get_event(self, event_id: str) -> AuditEvent | None:
        with self._lock:
            return next((event for event in self._events if event.id == event_id), None)

    def get_statistics(self, organization_id: int | None = None, now: datetime | None = None) -> Dict[str, Any]:
        now = now or self.clock()
        windows = {"last24h": timedelta(hours=24), "last7d": timedelta(days=7), "last30d": timedelta(days=30)}
        stats: Dict[str, Any] = {}
        matched: Dict[str, List[AuditEvent]] = {}
        for name, span in windows.items():
            events = self._all_matching(AuditQuery(organization_id=organization_id, start_date=now - span))
            matched[name] = events
            stats[name] = {
                "total": len(events),
                "successful": sum(1 for event in events if event.outcome == "success"),
                "failed": sum(1 for event in events if event.outcome == "failure"),
                "critical": sum(1 for event in events if event.severity == "critical"),
                "high": sum(1 for event in events if event.severity == "high"),
            }

        stats["categories"] = dict(Counter(event.category for event in matched["last30d"]))
        top = sorted(matched["last7d"], key=lambda event: event.risk.score, reverse=True)[:10]
        stats["top_risks"] = [
            {
                "id": event.id,
                "event_type": event.event_type,
                "description": event.details.description,
                "risk_score": event.risk.score,
                "timestamp": event.timestamp,
            }
            for event in top
        ]
        return stats

    def get_compliance_report(
        self,
        organization_id: int,
        regulation: str,
        start_date: datetime,
        end_date: datetime,
    ) -> Dict[str, Any]:
        events = self._all_matching(
            AuditQuery(organization_id=organization_id, start_date=start_date, end_date=end_date)
        )
        relevant = [event for event in events if regulation in event.compliance.regulations]

        critical_events = sum(1 for event in relevant if event.severity == "critical")
        failed_events = sum(1 for event in relevant if event.outcome == "failure")
        compliance_score = max(0, 100 - critical_events * 10 - failed_events * 5)

        return {
            "regulation": regulation,
            "period": {"start": start_date, "end": end_date},
            "summary": {
                "total_events": len(relevant),
                "critical_events": critical_events,
                "failed_events": failed_events,
                "compliance_score": compliance_score,
            },
            "categories": dict(Counter(event.category for event in relevant)),
            "risk_distribution": dict(Counter(event.risk.verdict for event in relevant)),
            "recommendations": self._compliance_recommendations(
                regulation, compliance_score, critical_events, failed_events
            ),
        }

    def export_for_compliance(self, query: AuditQuery, export_format: str) -> str | bytes:
        if export_format not in EXPORT_FORMATS:
            raise UnsupportedExportFormat(
                f"Unsupported export format {export_format!r}; expected one of {', '.join(EXPORT_FORMATS)}"
            )
        result = self.query_events(query)
        if export_format == "json":
            payload = {
                "export_time": self.clock(),
                "query": asdict(query),
                "total_events": result.total_count,
                "events": [event.to_dict() for event in result.events],
            }
            return json.dumps(jsonable_encoder(payload), indent=2)
        if export_format == "csv":
            return self._to_csv(result.events)
        return self._to_pdf(result.events, result.total_count)

    def __len__(self) -> int:
        return len(self._events)

    # -- internals -----------------------------------------------------------

    def _record(
        self,
        *,
        prefix: str,
        category: str,
        action: str,
        outcome: str,
        severity: str,
        resource: str,
        description: str,
        request: RequestContext,
        classification: str,
        resource_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        user_id: int | None = None,
        organization_id: int | None = None,
        session_id: str | None = None,
        risk: AuditRisk | None = None,
    ) -> AuditEvent:
        context = self._context(request)
        event = AuditEvent(
            id=self._generate_id(),
            timestamp=self.clock(),
            event_type=f"{prefix}.{action}",
            category=category,
            action=action,
            resource=resource,
            resource_id=resource_id,
            outcome=outcome,
            severity=severity,
            details=AuditDetails(
                description=description,
                metadata=dict(metadata) if metadata is not None else None,
                before=dict(before) if before is not None else None,
                after=dict(after) if after is not None else None,
            ),
            context=context,
            risk=risk or self._calculate_risk(action, outcome, context.user_agent),
            compliance=ComplianceInfo(
                regulations=tuple(self.config.regulations.get(category, ())),
                retention_period=self.config.retention_days,
                data_classification=classification,
            ),
            organization_id=organization_id,
            user_id=user_id,
            session_id=session_id,
        )
        self._store(event)
        return event

    def _store(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            overflow = len(self._events) - self.config.max_events
            if overflow > 0:
                del self._events[:overflow]
        logger.info("[audit] %s: %s", event.event_type, event.details.description)

    def _all_matching(self, query: AuditQuery) -> List[AuditEvent]:
        with self._lock:
            return [event for event in self._events if _matches(event, query)]

    def _calculate_risk(self, action: str, outcome: str, user_agent: str) -> AuditRisk:
        score = 10
        factors: List[str] = []
        if outcome == "failure":
            score += 30
            factors.append("Authentication failure")
        if action in self.config.sensitive_actions:
            score += 20
            factors.append("Sensitive operation")
        if not user_agent or len(user_agent) < 10:
            score += 15
            factors.append("Suspicious user agent")
        return AuditRisk(score=min(100, score), factors=tuple(factors), verdict=verdict_for(score))

    @staticmethod
    def _context(request: RequestContext) -> AuditContext:
        user_agent = request.user_agent or ""
        return AuditContext(
            ip_address=request.ip_address or "unknown",
            user_agent=user_agent,
            location=dict(request.location) if request.location else None,
            device=parse_user_agent(user_agent),
        )

    @staticmethod
    def _generate_id() -> str:
        return f"audit_{int(time.time() * 1000)}_{secrets.token_hex(5)}"

    @staticmethod
    def _auth_severity(action: str, outcome: str) -> str:
        if outcome == "failure":
            return "medium" if action in ("login_failed", "mfa_failed") else "high"
        if action in ("password_reset", "mfa_challenge"):
            return "medium"
        return "low"

    @staticmethod
    def _auth_description(action: str, outcome: str, email: str | None) -> str:
        user = f" for {email}" if email else ""
        if action == "login":
            result = "successful" if outcome == "success" else "failed"
            return f"User login {result}{user}"
        template = _AUTH_DESCRIPTIONS.get(action)
        if template is None:
            return f"Authentication event: {action}{user}"
        return template.format(user=user)

    @staticmethod
    def _compliance_recommendations(
        regulation: str, score: int, critical_events: int, failed_events: int
    ) -> List[str]:
        recommendations: List[str] = []
        if score < 80:
            recommendations.append("Improve overall security posture to meet compliance requirements")
        if critical_events > 0:
            recommendations.append("Investigate and remediate all critical security events")
        if failed_events > 10:
            recommendations.append("Review and strengthen authentication mechanisms")
        if regulation == "GDPR":
            recommendations.append("Ensure data processing activities are documented and lawful")
            recommendations.append("Review data retention policies and implement automated deletion")
        if regulation == "HIPAA":
            recommendations.append("Verify PHI access controls are properly implemented")
            recommendations.append("Conduct regular security risk assessments")
        return recommendations

    @staticmethod
    def _csv_row(event: AuditEvent) -> List[Any]:
        return [
            event.id,
            event.timestamp.isoformat(),
            event.event_type,
            event.category,
            event.action,
            event.resource,
            event.outcome,
            event.severity,
            event.user_id if event.user_id is not None else "",
            event.organization_id if event.organization_id is not None else "",
            event.context.ip_address,
            event.risk.score,
            event.details.description,
        ]

    def _to_csv(self, events: List[AuditEvent]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        writer.writerows(self._csv_row(event) for event in events)
        return buffer.getvalue()

    def _to_pdf(self, events: List[AuditEvent], total: int) -> bytes:
        buffer = io.BytesIO()
        document = SimpleDocTemplate(buffer, pagesize=landscape(A4), title="Audit log export")
        styles = getSampleStyleSheet()
        cell = ParagraphStyle("cell", parent=styles["BodyText"], fontSize=7, leading=8)

        selected = [CSV_HEADERS.index(name) for name in PDF_COLUMNS]
        rows: List[List[Any]] = [list(PDF_COLUMNS)]
        for event in events:
            row = self._csv_row(event)
            rows.append([Paragraph(escape(str(row[index])), cell) for index in selected])

        table = Table(rows, repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                    ("FONTSIZE", (0, 0), (-1, 0), 8),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ]
            )
        )
        story = [
            Paragraph("Audit log export", styles["Title"]),
            Paragraph(f"Generated {self.clock().isoformat()} - {len(events)} of {total} events", styles["Normal"]),
            Spacer(1, 12),
            table,
        ]
        document.build(story)
        return buffer.getvalue()


def _ranked_severity(action: str, *, critical: Tuple[str, ...], high: Tuple[str, ...], medium: Tuple[str, ...]) -> str:
    if action in critical:
        return "critical"
    if action in high:
        return "high"
    if action in medium:
        return "medium"
    return "low"


def _matches(event: AuditEvent, query: AuditQuery) -> bool:
    if query.organization_id is not None and event.organization_id != query.organization_id:
        return False
    if query.user_id is not None and event.user_id != query.user_id:
        return False
    if query.event_types and event.event_type not in query.event_types:
        return False
    if query.categories and event.category not in query.categories:
        return False
    if query.outcomes and event.outcome not in query.outcomes:
        return False
    if query.severities and event.severity not in query.severities:
        return False
    if query.start_date is not None and event.timestamp < query.start_date:
        return False
    if query.end_date is not None and event.timestamp > query.end_date:
        return False
    if query.ip_address and event.context.ip_address != query.ip_address:
        return False
    return True


def _sort_key(sort_by: str) -> Callable[[AuditEvent], Any]:
    if sort_by == "severity":
        return lambda event: (severity_rank(event.severity), event.timestamp)
    if sort_by == "risk_score":
        return lambda event: (event.risk.score, event.timestamp)
    return lambda event: event.timestamp
