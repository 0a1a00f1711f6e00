from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Mapping, MutableMapping, Optional
from uuid import uuid4

from celery import Celery

from .config import mongodb_database, mongodb_uri
from .geo import build_geo_locator
from .persistence import AssessmentRepository
from .risk_engine import RiskAssessmentEngine
from .webhook import build_alert_payload, deliver_webhook, resolve_webhook_url


def _broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")


def _result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", _broker_url())


celery_app = Celery("auth_risk_monitor", broker=_broker_url(), backend=_result_backend())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)

# Worker-local services, built on first use inside the worker process.
_ENGINE: Optional[RiskAssessmentEngine] = None
_REPOSITORY: Optional[AssessmentRepository] = None


def _get_engine() -> RiskAssessmentEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = RiskAssessmentEngine(geo_locator=build_geo_locator())
    return _ENGINE


def _get_repository() -> AssessmentRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        _REPOSITORY = AssessmentRepository(uri=mongodb_uri(), database=mongodb_database())
    return _REPOSITORY


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@celery_app.task(name="auth_risk_monitor.process_assessment")
def process_assessment(task_id: str, request: Mapping[str, Any]) -> MutableMapping[str, Any]:
    engine = _get_engine()
    repo = _get_repository()
    fingerprint = request.get("device_fingerprint")
    event = engine.evaluate_authentication_risk(
        email=str(request["email"]),
        password=str(request["password"]),
        ip_address=str(request.get("ip_address") or "unknown"),
        user_agent=str(request.get("user_agent") or "unknown"),
        device_fingerprint=fingerprint,
        session_id=request.get("session_id"),
        timestamp=_parse_timestamp(request.get("timestamp")),
    )
    engine.update_user_profile(event.email, event, fingerprint)
    recommendations = engine.get_security_recommendations(event.email)
    repo.save_assessment(task_id, request, event, recommendations)

    result = repo.serialize_assessment(event, recommendations)
    deliver_webhook(
        resolve_webhook_url(),
        build_alert_payload(kind="risk_assessment", body=result, task_id=task_id, source="async"),
    )
    return result


def enqueue_assessment(request: Mapping[str, Any]) -> str:
    task_id = str(uuid4())
    process_assessment.apply_async(args=[task_id, dict(request)], task_id=task_id)
    return task_id
