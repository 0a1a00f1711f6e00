from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Mapping, MutableMapping, Optional

import httpx
from fastapi.encoders import jsonable_encoder


logger = logging.getLogger(__name__)


def resolve_webhook_url(default: Optional[str] = None) -> Optional[str]:
    """Return the security alert webhook URL from environment or provided default."""
    return os.getenv("SECURITY_ALERT_WEBHOOK_URL", default)


def build_alert_payload(
    *,
    kind: str,
    body: Mapping[str, Any],
    task_id: Optional[str] = None,
    source: str = "monitor",
) -> MutableMapping[str, Any]:
    """Create a JSON-serializable payload for an alert or finished assessment."""
    payload: MutableMapping[str, Any] = {
        "kind": kind,
        "source": source,
        "task_id": task_id,
        "sent_at": datetime.now(timezone.utc),
        "body": body,
    }
    return jsonable_encoder(payload)


def deliver_webhook(webhook_url: Optional[str], payload: Mapping[str, Any]) -> None:
    """POST the payload to the configured webhook endpoint if present."""
    if not webhook_url:
        return

    try:
        with httpx.Client(timeout=5.0) as client:
            response = client.post(str(webhook_url), json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to deliver security webhook to %s: %s", webhook_url, exc)


def webhook_alert_hook(webhook_url: Optional[str]):
    """Adapt ``deliver_webhook`` to the monitor's alert hook signature."""

    def hook(alert: Mapping[str, Any]) -> None:
        body = {key: value for key, value in alert.items() if key != "kind"}
        deliver_webhook(webhook_url, build_alert_payload(kind=str(alert.get("kind")), body=body))

    return hook
