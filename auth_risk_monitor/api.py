from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .audit_log import EVENT_TYPES, AuditLogService, UnsupportedExportFormat
from .config import mongodb_database, mongodb_uri
from .geo import build_geo_locator
from .maintenance import MaintenanceLoop
from .models import AuditEvent, AuditQuery, RequestContext, SecurityEvent
from .persistence import AssessmentRepository, SnapshotStore, build_snapshot_store
from .risk_engine import RiskAssessmentEngine
from .security_monitor import SecurityMonitor
from .tasks import enqueue_assessment
from .webhook import resolve_webhook_url, webhook_alert_hook

UNINSPECTED_PATHS = {"/health"}
EXPORT_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv", "pdf": "application/pdf"}

Severity = Literal["low", "medium", "high", "critical"]
MonitorEventType = Literal[
    "auth_failure",
    "rate_limit",
    "suspicious_activity",
    "permission_violation",
    "data_access",
    "session_anomaly",
]


class ScreenPayload(BaseModel):
    width: int = 0
    height: int = 0


class DeviceFingerprintPayload(BaseModel):
    user_agent: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    screen: Optional[ScreenPayload] = None
    plugins: List[str] = Field(default_factory=list)


class RiskAssessmentRequest(BaseModel):
    email: str
    password: str
    device_fingerprint: Optional[DeviceFingerprintPayload] = None
    session_id: Optional[str] = None
    user_id: Optional[int] = None
    organization_id: Optional[int] = None


class RiskFactorResponse(BaseModel):
    type: str
    severity: str
    score: float
    description: str
    evidence: Dict[str, Any]


class RiskAssessmentResponse(BaseModel):
    risk_score: float
    action: str
    risk_factors: List[RiskFactorResponse]
    recommendations: List[str]
    timestamp: datetime


class TaskEnqueueResponse(BaseModel):
    task_id: str
    status: str


class TaskStatusResponse(BaseModel):
    task_id: str
    status: str
    assessment: Optional[Dict[str, Any]] = None


class LoginFailureRequest(BaseModel):
    email: str
    user_id: Optional[int] = None
    organization_id: Optional[int] = None
    reason: Optional[str] = None


class IPStatusResponse(BaseModel):
    ip: str
    blocked: bool
    risk_score: float
    status: str


class SecurityEventRequest(BaseModel):
    type: MonitorEventType
    severity: Severity
    description: str
    metadata: Optional[Dict[str, Any]] = None


class ExportRequest(BaseModel):
    format: str = "json"
    organization_id: Optional[int] = None
    user_id: Optional[int] = None
    event_types: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    outcomes: Optional[List[str]] = None
    severities: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    ip_address: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=100_000)
    offset: int = Field(default=0, ge=0)
    sort_by: Literal["timestamp", "severity", "risk_score"] = "timestamp"
    sort_order: Literal["asc", "desc"] = "desc"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_context(request: Request) -> RequestContext:
    return RequestContext(ip_address=_client_ip(request), user_agent=request.headers.get("user-agent"))


def _serialize_assessment(event: SecurityEvent, recommendations: List[str]) -> RiskAssessmentResponse:
    return RiskAssessmentResponse(
        risk_score=event.risk_score,
        action=event.action,
        risk_factors=[
            RiskFactorResponse(
                type=factor.type,
                severity=factor.severity,
                score=factor.score,
                description=factor.description,
                evidence=jsonable_encoder(dict(factor.evidence)),
            )
            for factor in event.risk_factors
        ],
        recommendations=recommendations,
        timestamp=event.timestamp,
    )


def _serialize_audit_event(event: AuditEvent) -> Dict[str, Any]:
    return jsonable_encoder(event.to_dict())


def create_app(
    engine: RiskAssessmentEngine | None = None,
    audit_log: AuditLogService | None = None,
    monitor: SecurityMonitor | None = None,
    repository: AssessmentRepository | None = None,
    snapshot_store: SnapshotStore | None = None,
    run_maintenance: bool = True,
) -> FastAPI:
    engine = engine or RiskAssessmentEngine(geo_locator=build_geo_locator())
    audit_log = audit_log or AuditLogService()
    if monitor is None:
        webhook_url = resolve_webhook_url()
        monitor = SecurityMonitor(
            store=snapshot_store or build_snapshot_store(),
            alert_hook=webhook_alert_hook(webhook_url) if webhook_url else None,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop = MaintenanceLoop(monitor, engine) if run_maintenance else None
        if loop is not None:
            loop.start()
        try:
            yield
        finally:
            if loop is not None:
                await loop.shutdown()
            close_locator = getattr(engine.geo_locator, "close", None)
            if close_locator is not None:
                close_locator()

    app = FastAPI(title="Auth Risk Monitor API", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.audit_log = audit_log
    app.state.monitor = monitor
    app.state.repository = repository

    def get_repository() -> AssessmentRepository:
        if app.state.repository is None:
            app.state.repository = AssessmentRepository(uri=mongodb_uri(), database=mongodb_database())
        return app.state.repository

    @app.middleware("http")
    async def security_middleware(request: Request, call_next):
        if request.url.path in UNINSPECTED_PATHS:
            return await call_next(request)
        body = (await request.body()).decode("utf-8", errors="replace")
        allowed = await run_in_threadpool(
            monitor.inspect_request,
            _client_ip(request),
            request.url.path,
            json.dumps(dict(request.query_params)),
            body,
            request.headers.get("user-agent"),
        )
        if not allowed:
            return JSONResponse(status_code=403, content={"error": "Access denied"})
        return await call_next(request)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # -- authentication risk -------------------------------------------------

    @app.post("/auth/risk-assessment", response_model=RiskAssessmentResponse)
    def risk_assessment(payload: RiskAssessmentRequest, request: Request) -> RiskAssessmentResponse:
        if not payload.email or not payload.password:
            raise HTTPException(status_code=400, detail="Email and password required for risk assessment")

        context = _request_context(request)
        fingerprint = payload.device_fingerprint.model_dump(exclude_none=True) if payload.device_fingerprint else None
        event = engine.evaluate_authentication_risk(
            payload.email,
            payload.password,
            context.ip_address,
            context.user_agent or "unknown",
            fingerprint,
            session_id=payload.session_id,
        )
        engine.update_user_profile(payload.email, event, fingerprint)

        if event.action in ("block", "require_verification"):
            severity = "high" if event.action == "block" else "medium"
            factors = [factor.type for factor in event.risk_factors]
            monitor.record_security_event(
                "suspicious_activity",
                severity,
                context.ip_address,
                f"Risky authentication attempt ({event.action})",
                {"email": payload.email, "risk_score": event.risk_score, "factors": factors},
                context.user_agent,
                payload.email,
            )
            audit_log.log_security(
                "suspicious_activity",
                severity,
                context,
                user_id=payload.user_id,
                organization_id=payload.organization_id,
                threat=f"risk_assessment:{event.action}",
                metadata={"email": payload.email, "risk_score": event.risk_score, "factors": factors},
            )

        return _serialize_assessment(event, engine.get_security_recommendations(payload.email))

    @app.post("/auth/risk-assessment/async", response_model=TaskEnqueueResponse, status_code=202)
    def queue_risk_assessment(payload: RiskAssessmentRequest, request: Request) -> TaskEnqueueResponse:
        context = _request_context(request)
        task_request = payload.model_dump(mode="json", exclude_none=True)
        task_request.update(
            ip_address=context.ip_address,
            user_agent=context.user_agent or "unknown",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        task_id = enqueue_assessment(task_request)
        return TaskEnqueueResponse(task_id=task_id, status="queued")

    @app.get("/tasks/{task_id}", response_model=TaskStatusResponse)
    def task_status(task_id: str) -> TaskStatusResponse:
        record = get_repository().get_assessment(task_id)
        if record is None:
            return TaskStatusResponse(task_id=task_id, status="pending", assessment=None)
        return TaskStatusResponse(task_id=task_id, status="completed", assessment=record["assessment"])

    @app.post("/auth/login-failure", response_model=IPStatusResponse)
    def login_failure(payload: LoginFailureRequest, request: Request) -> IPStatusResponse:
        context = _request_context(request)
        engine.record_authentication_failure(context.ip_address)
        monitor.record_security_event(
            "auth_failure",
            "medium",
            context.ip_address,
            f"Failed login for {payload.email}",
            {"reason": payload.reason} if payload.reason else None,
            context.user_agent,
            payload.email,
        )
        audit_log.log_auth(
            "login_failed",
            "failure",
            context,
            user_id=payload.user_id,
            organization_id=payload.organization_id,
            email=payload.email,
            metadata={"reason": payload.reason} if payload.reason else None,
        )
        return IPStatusResponse(**monitor.get_ip_status(context.ip_address))

    @app.get("/accounts/{email}/profile")
    def account_profile(email: str) -> Dict[str, Any]:
        return jsonable_encoder({"email": email, **engine.summary(email)})

    # -- monitoring ----------------------------------------------------------

    @app.get("/monitoring/security-dashboard")
    def security_dashboard() -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        return jsonable_encoder({"success": True, "data": monitor.get_security_dashboard(now), "timestamp": now})

    @app.post("/monitoring/security-event")
    def record_security_event(payload: SecurityEventRequest, request: Request) -> Dict[str, Any]:
        context = _request_context(request)
        event = monitor.record_security_event(
            payload.type,
            payload.severity,
            context.ip_address,
            payload.description,
            payload.metadata,
            context.user_agent,
        )
        return {"success": True, "message": "Security event recorded", "id": event.id}

    @app.get("/monitoring/ip-status/{ip}", response_model=IPStatusResponse)
    def ip_status(ip: str) -> IPStatusResponse:
        return IPStatusResponse(**monitor.get_ip_status(ip))

    # -- audit ---------------------------------------------------------------

    @app.get("/audit/events")
    def audit_events(
        organization_id: Optional[int] = None,
        user_id: Optional[int] = None,
        event_types: Optional[str] = None,
        categories: Optional[str] = None,
        outcomes: Optional[str] = None,
        severities: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        sort_by: Literal["timestamp", "severity", "risk_score"] = "timestamp",
        sort_order: Literal["asc", "desc"] = "desc",
    ) -> Dict[str, Any]:
        query = AuditQuery(
            organization_id=organization_id,
            user_id=user_id,
            event_types=_split(event_types),
            categories=_split(categories),
            outcomes=_split(outcomes),
            severities=_split(severities),
            start_date=_aware(start_date),
            end_date=_aware(end_date),
            ip_address=ip_address,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        result = audit_log.query_events(query)
        return {
            "events": [_serialize_audit_event(event) for event in result.events],
            "pagination": {
                "total": result.total_count,
                "limit": limit,
                "offset": offset,
                "has_more": result.has_more,
            },
        }

    @app.get("/audit/events/{event_id}")
    def audit_event(event_id: str) -> Dict[str, Any]:
        event = audit_log.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Audit event not found")
        return _serialize_audit_event(event)

    @app.get("/audit/stats")
    def audit_stats(organization_id: Optional[int] = None) -> Dict[str, Any]:
        return jsonable_encoder(audit_log.get_statistics(organization_id))

    @app.get("/audit/compliance/{regulation}")
    def compliance_report(
        regulation: str,
        organization_id: int,
        start_date: datetime,
        end_date: datetime,
    ) -> Dict[str, Any]:
        report = audit_log.get_compliance_report(
            organization_id, regulation.upper(), _aware(start_date), _aware(end_date)
        )
        return jsonable_encoder(report)

    @app.post("/audit/export")
    def export_audit(payload: ExportRequest, request: Request) -> Response:
        query = AuditQuery(**payload.model_dump(exclude={"format"}))
        query.start_date = _aware(query.start_date)
        query.end_date = _aware(query.end_date)
        try:
            content = audit_log.export_for_compliance(query, payload.format)
        except UnsupportedExportFormat as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        audit_log.log_security(
            "suspicious_activity",
            "medium",
            _request_context(request),
            organization_id=payload.organization_id,
            threat="audit_data_export",
            metadata={"format": payload.format, "query": payload.model_dump(mode="json", exclude={"format"})},
        )

        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        filename = f"audit-export-{stamp}.{payload.format}"
        return Response(
            content=content,
            media_type=EXPORT_MEDIA_TYPES[payload.format],
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/audit/event-types")
    def audit_event_types() -> Dict[str, List[str]]:
        return {"event_types": list(EVENT_TYPES)}

    return app


app = create_app()
