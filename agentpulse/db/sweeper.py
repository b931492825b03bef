"""Fixed-interval maintenance loops.

Runs the idle/stop sweep and alert scan, hourly retention cleanup, and the
dev-server port scan with branch refresh. Each loop is an independent
asyncio task; a failing pass is logged and the loop keeps going.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from agentpulse import config
from agentpulse.broadcast import Broadcaster
from agentpulse.date_utils import now_ms
from agentpulse.services.alerts import AlertEngine
from agentpulse.services.lifecycle import SessionLifecycleEngine
from agentpulse.services.port_scanner import PortScanner
from agentpulse.services.retention import RetentionService
from agentpulse.services.webhooks import WebhookDispatcher

logger = logging.getLogger("agentpulse.sweeper")


class MaintenanceScheduler:
    def __init__(
        self,
        engine: SessionLifecycleEngine,
        alerts: AlertEngine,
        retention: RetentionService,
        port_scanner: Optional[PortScanner] = None,
        broadcaster: Optional[Broadcaster] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        sweep_interval: float = config.SWEEP_INTERVAL_SECONDS,
        cleanup_interval: float = config.CLEANUP_INTERVAL_SECONDS,
        port_scan_interval: float = config.PORT_SCAN_INTERVAL_SECONDS,
    ):
        self.engine = engine
        self.alerts = alerts
        self.retention = retention
        self.port_scanner = port_scanner
        self.broadcaster = broadcaster
        self.webhooks = webhooks
        self.sweep_interval = sweep_interval
        self.cleanup_interval = cleanup_interval
        self.port_scan_interval = port_scan_interval
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._known_alert_ids: set[str] = set()
        self.last_sweep_at: int | None = None
        self.last_cleanup_at: int | None = None
        self.last_cleanup_result: dict | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Maintenance scheduler already running")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop("sweep", self.sweep_interval, self.run_sweep)),
            asyncio.create_task(self._loop("cleanup", self.cleanup_interval, self.run_cleanup)),
            asyncio.create_task(self._loop("port-scan", self.port_scan_interval, self.run_port_scan)),
        ]
        logger.info("Maintenance scheduler started (%d loops)", len(self._tasks))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Maintenance scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _loop(self, name: str, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        try:
            while self._running:
                await asyncio.sleep(interval)
                try:
                    await job()
                except Exception:
                    logger.exception("Maintenance pass %s failed", name)
        except asyncio.CancelledError:
            logger.info("Maintenance loop %s cancelled", name)

    async def run_sweep(self, now: int | None = None) -> dict:
        """Idle/stop sweep followed by an alert scan."""
        now = now_ms() if now is None else now
        affected = await self.engine.sweep(now)
        alerts = await self.alerts.check(now)
        current_ids = {a["id"] for a in alerts}
        new_alerts = [a for a in alerts if a["id"] not in self._known_alert_ids]
        self._known_alert_ids = current_ids
        self.last_sweep_at = now

        if self.webhooks is not None and new_alerts:
            try:
                await self.webhooks.dispatch_alerts(new_alerts)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Alert webhook dispatch failed: %s", exc)

        if self.broadcaster is not None and len(self.broadcaster):
            if affected:
                await self.broadcaster.send("projects", await self.engine.list_projects())
                await self.broadcaster.send("sessions", await self.engine.active_sessions(now))
            await self.broadcaster.send("alerts", alerts)
            await self.broadcaster.send("conflicts", await self.engine.conflicts.active_conflicts(now))
        return {"affected_projects": sorted(affected), "alerts": alerts, "new_alerts": new_alerts}

    async def run_cleanup(self, now: int | None = None) -> dict:
        now = now_ms() if now is None else now
        result = await self.retention.cleanup(now)
        self.last_cleanup_at = now
        self.last_cleanup_result = result
        return result

    async def run_port_scan(self) -> list[str]:
        changed: list[str] = []
        if self.port_scanner is not None:
            changed.extend(await self.port_scanner.scan())
        for name in await self.engine.refresh_branches():
            if name not in changed:
                changed.append(name)
        if changed and self.broadcaster is not None and len(self.broadcaster):
            await self.broadcaster.send("projects", await self.engine.list_projects())
        return changed
