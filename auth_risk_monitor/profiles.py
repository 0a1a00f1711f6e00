from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, Optional

from .locking import KeyedLock
from .models import UserSecurityProfile

logger = logging.getLogger(__name__)


class UserProfileStore:
    """In-memory user security profiles keyed by email."""

    def __init__(self, initial_trust_score: float = 50.0):
        self.initial_trust_score = initial_trust_score
        self._profiles: Dict[str, UserSecurityProfile] = {}
        self._locks = KeyedLock()

    @contextmanager
    def locked(self, email: str) -> Iterator[None]:
        with self._locks.hold(email):
            yield

    def get(self, email: str) -> Optional[UserSecurityProfile]:
        return self._profiles.get(email)

    def get_or_create(self, email: str, now: datetime) -> UserSecurityProfile:
        profile = self._profiles.get(email)
        if profile is None:
            profile = UserSecurityProfile(
                email=email,
                last_login=now,
                trust_score=self.initial_trust_score,
            )
            self._profiles[email] = profile
        return profile

    def sweep(self, now: datetime, idle_ttl: timedelta) -> int:
        """Drop history older than ``idle_ttl`` and delete idle, empty profiles."""
        cutoff = now - idle_ttl
        removed = 0
        for email in list(self._profiles):
            with self._locks.hold(email):
                profile = self._profiles.get(email)
                if profile is None:
                    continue
                profile.risk_history = [event for event in profile.risk_history if event.timestamp > cutoff]
                if not profile.risk_history and profile.last_login < cutoff:
                    del self._profiles[email]
                    removed += 1
            if email not in self._profiles:
                self._locks.discard(email)
        if removed:
            logger.info("Removed %d idle security profiles", removed)
        return removed

    def __len__(self) -> int:
        return len(self._profiles)
