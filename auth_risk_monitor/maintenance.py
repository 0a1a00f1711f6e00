from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from .risk_engine import RiskAssessmentEngine
from .security_monitor import SecurityMonitor

logger = logging.getLogger(__name__)


class MaintenanceLoop:
    """Background upkeep: monitor metrics/snapshots/decay and profile sweeps.

    Runs as an asyncio task next to request handling. ``shutdown`` cancels the
    task, waits for it, then writes a final monitor snapshot.
    """

    def __init__(
        self,
        monitor: SecurityMonitor,
        engine: RiskAssessmentEngine,
        monitor_interval: Optional[timedelta] = None,
        cleanup_interval: Optional[timedelta] = None,
    ):
        self.monitor = monitor
        self.engine = engine
        if monitor_interval is None:
            monitor_interval = monitor.config.maintenance_interval
        if cleanup_interval is None:
            cleanup_interval = engine.config.cleanup_interval
        self.monitor_interval = monitor_interval.total_seconds()
        self.cleanup_interval = cleanup_interval.total_seconds()
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup = time.monotonic()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._last_cleanup = time.monotonic()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await asyncio.to_thread(self.monitor.stop)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval)
            await self.tick()

    async def tick(self) -> None:
        try:
            await asyncio.to_thread(self.monitor.run_maintenance)
            if time.monotonic() - self._last_cleanup >= self.cleanup_interval:
                self._last_cleanup = time.monotonic()
                await asyncio.to_thread(self.engine.cleanup_old_data)
        except Exception:  # next tick retries
            logger.exception("Security maintenance pass failed")
