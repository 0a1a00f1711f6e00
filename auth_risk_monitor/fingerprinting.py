from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from .models import DeviceFingerprint

COMPARED_FIELDS = ("user_agent", "timezone", "language", "platform")
_DEFAULTS = {"timezone": "unknown", "language": "en", "platform": "unknown"}
_ALIASES = {"userAgent": "user_agent"}


class DeviceFingerprinter:
    def __init__(self, similarity_threshold: float = 0.8):
        self.similarity_threshold = similarity_threshold

    def normalize(self, fingerprint: Mapping[str, Any], user_agent: str) -> Dict[str, Any]:
        """Fill in the compared fields the client left out.

        The request user agent stands in for a missing fingerprint user agent so
        that a stored device and a later submission are compared like for like.
        """
        normalized: Dict[str, Any] = {_ALIASES.get(key, key): value for key, value in fingerprint.items()}
        if not normalized.get("user_agent"):
            normalized["user_agent"] = user_agent
        for key, default in _DEFAULTS.items():
            if not normalized.get(key):
                normalized[key] = default
        return normalized

    def similarity(self, device: DeviceFingerprint | Mapping[str, Any], candidate: Mapping[str, Any]) -> float:
        matches = sum(1 for name in COMPARED_FIELDS if _field(device, name) == candidate.get(name))
        return matches / len(COMPARED_FIELDS)

    def find_known(
        self, devices: Iterable[DeviceFingerprint], candidate: Mapping[str, Any]
    ) -> Optional[DeviceFingerprint]:
        for device in devices:
            if self.similarity(device, candidate) > self.similarity_threshold:
                return device
        return None

    def device_id(self, candidate: Mapping[str, Any]) -> str:
        payload = json.dumps(candidate, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    def to_device(self, candidate: Mapping[str, Any], seen_at: datetime) -> DeviceFingerprint:
        screen = candidate.get("screen") or {"width": 0, "height": 0}
        return DeviceFingerprint(
            id=self.device_id(candidate),
            user_agent=str(candidate["user_agent"]),
            timezone=str(candidate["timezone"]),
            language=str(candidate["language"]),
            platform=str(candidate["platform"]),
            first_seen=seen_at,
            last_used=seen_at,
            screen=dict(screen),
            plugins=list(candidate.get("plugins") or []),
        )

    @staticmethod
    def sanitize(candidate: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "platform": candidate.get("platform"),
            "timezone": candidate.get("timezone"),
            "language": candidate.get("language"),
        }


def _field(source: DeviceFingerprint | Mapping[str, Any], name: str) -> Any:
    if isinstance(source, DeviceFingerprint):
        return getattr(source, name)
    return source.get(name)
