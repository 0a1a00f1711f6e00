from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional, Protocol

from fastapi.encoders import jsonable_encoder
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .config import mongodb_database, mongodb_uri, security_data_dir, snapshot_backend
from .models import RiskFactor, SecurityEvent

logger = logging.getLogger(__name__)

SNAPSHOT_FILES = {
    "events": "security-events.json",
    "threats": "threat-intelligence.json",
    "metrics": "security-metrics.json",
    "critical_events": "critical-security-events.json",
}


def serialize_factor(factor: RiskFactor) -> Dict[str, Any]:
    return {
        "type": factor.type,
        "severity": factor.severity,
        "score": factor.score,
        "description": factor.description,
        "evidence": jsonable_encoder(dict(factor.evidence)),
    }


def serialize_security_event(event: SecurityEvent) -> Dict[str, Any]:
    return {
        "email": event.email,
        "session_id": event.session_id,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "timestamp": event.timestamp.isoformat(),
        "event": event.event,
        "risk_score": event.risk_score,
        "raw_score": event.raw_score,
        "action": event.action,
        "risk_factors": [serialize_factor(factor) for factor in event.risk_factors],
    }


class SnapshotStore(Protocol):
    def save(self, name: str, payload: Any) -> None:
        ...

    def load(self, name: str) -> Optional[Any]:
        ...

    def append(self, name: str, record: Mapping[str, Any]) -> None:
        ...


class JsonFileSnapshotStore:
    """Writes each snapshot as a JSON document in a directory.

    Missing directories and permission errors are tolerated quietly; other
    filesystem errors are logged and the write is dropped.
    """

    def __init__(self, directory: str | os.PathLike[str]):
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / SNAPSHOT_FILES.get(name, f"{name}.json")

    def save(self, name: str, payload: Any) -> None:
        self._write(self.path_for(name), payload)

    def load(self, name: str) -> Optional[Any]:
        path = self.path_for(name)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def append(self, name: str, record: Mapping[str, Any]) -> None:
        path = self.path_for(name)
        try:
            existing = self.load(name) or []
        except (OSError, ValueError) as exc:
            logger.error("Could not read %s, starting a new log: %s", path, exc)
            existing = []
        existing.append(record)
        self._write(path, existing)

    def _write(self, path: Path, payload: Any) -> None:
        try:
            path.write_text(json.dumps(jsonable_encoder(payload), indent=2), encoding="utf-8")
        except (FileNotFoundError, PermissionError) as exc:
            logger.debug("Skipping snapshot %s: %s", path, exc)
        except OSError as exc:
            logger.error("Error saving snapshot %s: %s", path, exc)


class MongoSnapshotStore:
    """MongoDB-backed snapshot store, one document per snapshot name."""

    def __init__(self, uri: str, database: str = "auth_risk") -> None:
        self.client = MongoClient(uri)
        self.db = self.client[database]
        self.snapshots = self.db["security_snapshots"]
        self.logs = self.db["security_logs"]

    def save(self, name: str, payload: Any) -> None:
        document = {"name": name, "payload": jsonable_encoder(payload), "updated_at": datetime.now(timezone.utc)}
        try:
            self.snapshots.replace_one({"name": name}, document, upsert=True)
        except PyMongoError as exc:
            logger.error("Error saving snapshot %s to MongoDB: %s", name, exc)

    def load(self, name: str) -> Optional[Any]:
        try:
            document = self.snapshots.find_one({"name": name})
        except PyMongoError as exc:
            logger.error("Error loading snapshot %s from MongoDB: %s", name, exc)
            return None
        if document is None:
            return None
        return document["payload"]

    def append(self, name: str, record: Mapping[str, Any]) -> None:
        try:
            self.logs.insert_one({"name": name, "record": jsonable_encoder(dict(record))})
        except PyMongoError as exc:
            logger.error("Error appending to %s in MongoDB: %s", name, exc)


class AssessmentRepository:
    """MongoDB-backed repository for queued risk assessment results."""

    def __init__(self, uri: str, database: str = "auth_risk") -> None:
        self.client = MongoClient(uri)
        self.db = self.client[database]
        self.assessments = self.db["assessments"]
        self._indexed = False

    def _ensure_indexes(self) -> None:
        if not self._indexed:
            self.assessments.create_index("task_id", unique=True)
            self._indexed = True

    def save_assessment(
        self,
        task_id: str,
        request: Mapping[str, Any],
        event: SecurityEvent,
        recommendations: Optional[list] = None,
    ) -> None:
        self._ensure_indexes()
        document: MutableMapping[str, Any] = {
            "task_id": task_id,
            "request": {key: value for key, value in request.items() if key != "password"},
            "assessment": self.serialize_assessment(event, recommendations),
            "created_at": datetime.now(timezone.utc),
        }
        self.assessments.replace_one({"task_id": task_id}, document, upsert=True)

    def get_assessment(self, task_id: str) -> Optional[Dict[str, Any]]:
        document = self.assessments.find_one({"task_id": task_id})
        if document is None:
            return None

        document.pop("_id", None)
        return document

    def serialize_assessment(self, event: SecurityEvent, recommendations: Optional[list] = None) -> Dict[str, Any]:
        payload = serialize_security_event(event)
        payload["recommendations"] = list(recommendations or [])
        return payload


def build_snapshot_store(backend: Optional[str] = None) -> SnapshotStore:
    backend = backend or snapshot_backend()
    if backend == "mongo":
        return MongoSnapshotStore(uri=mongodb_uri(), database=mongodb_database())
    if backend != "file":
        raise ValueError(f"Unknown snapshot backend: {backend}")
    return JsonFileSnapshotStore(security_data_dir())
