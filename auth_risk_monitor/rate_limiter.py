from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict


class SlidingWindowCounter:
    """Counts hits per key over a trailing time window.

    Keys whose window empties are dropped, so the counter only holds keys with
    recent activity.
    """

    def __init__(self, window: timedelta):
        self.window = window
        self._hits: Dict[str, Deque[datetime]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: datetime) -> int:
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            hits.append(now)
            self._trim(key, hits, now)
            return len(hits)

    def count(self, key: str, now: datetime) -> int:
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                return 0
            self._trim(key, hits, now)
            return len(hits)

    def purge(self, now: datetime) -> int:
        with self._lock:
            removed = 0
            for key in list(self._hits):
                hits = self._hits[key]
                self._trim(key, hits, now)
                if key not in self._hits:
                    removed += 1
            return removed

    def _trim(self, key: str, hits: Deque[datetime], now: datetime) -> None:
        while hits and now - hits[0] > self.window:
            hits.popleft()
        if not hits:
            del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)
