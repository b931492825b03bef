"""Threshold-based anomaly scan over sessions and recent events."""
from __future__ import annotations

from dataclasses import dataclass

import aiosqlite

from agentpulse.date_utils import MINUTE_MS
from agentpulse.hook_events import POST_TOOL_USE, POST_TOOL_USE_FAILURE, WRITE_TOOLS
from agentpulse.db.repositories.events import SqliteEventRepository

CRITICAL_FAILURE_COUNT = 10


@dataclass(frozen=True)
class AlertThresholds:
    stuck_agent_minutes: int = 5
    excessive_writes_count: int = 50
    excessive_writes_window_ms: int = 60_000
    repeated_failures_count: int = 5
    repeated_failures_window_ms: int = 120_000
    critical_failures_count: int = CRITICAL_FAILURE_COUNT


DEFAULT_THRESHOLDS = AlertThresholds()


def agent_label(source_app: str, session_id: str) -> str:
    return f"{source_app}:{session_id[:8]}"


def _alert(alert_type: str, severity: str, session_id: str, source_app: str, message: str, now: int) -> dict:
    return {
        "id": f"{alert_type}-{session_id}-{source_app}",
        "type": alert_type,
        "severity": severity,
        "session_id": session_id,
        "source_app": source_app,
        "agent_label": agent_label(source_app, session_id),
        "message": message,
        "detected_at": now,
    }


class AlertEngine:
    """Stateless: every scan recomputes alerts from current rows."""

    def __init__(self, db: aiosqlite.Connection, thresholds: AlertThresholds = DEFAULT_THRESHOLDS):
        self.db = db
        self.events = SqliteEventRepository(db)
        self.thresholds = thresholds

    async def check(self, now: int) -> list[dict]:
        alerts: list[dict] = []
        alerts.extend(await self._stuck_agents(now))
        alerts.extend(await self._excessive_writes(now))
        alerts.extend(await self._repeated_failures(now))
        return alerts

    async def _stuck_agents(self, now: int) -> list[dict]:
        cutoff = now - self.thresholds.stuck_agent_minutes * MINUTE_MS
        async with self.db.execute(
            "SELECT session_id, source_app, last_event_at FROM sessions WHERE status = 'active' AND last_event_at < ?",
            (cutoff,),
        ) as cur:
            rows = await cur.fetchall()
        alerts = []
        for row in rows:
            minutes = (now - row["last_event_at"]) // MINUTE_MS
            label = agent_label(row["source_app"], row["session_id"])
            alerts.append(_alert(
                "stuck_agent",
                "warning",
                row["session_id"],
                row["source_app"],
                f"Agent {label} has been active but idle for {minutes} minutes",
                now,
            ))
        return alerts

    async def _excessive_writes(self, now: int) -> list[dict]:
        t = self.thresholds
        rows = await self.events.count_by_session(
            POST_TOOL_USE, now - t.excessive_writes_window_ms, tuple(sorted(WRITE_TOOLS))
        )
        alerts = []
        for row in rows:
            if row["count"] <= t.excessive_writes_count:
                continue
            label = agent_label(row["source_app"], row["session_id"])
            alerts.append(_alert(
                "excessive_writes",
                "critical",
                row["session_id"],
                row["source_app"],
                f"Agent {label} performed {row['count']} file writes in "
                f"{t.excessive_writes_window_ms // 1000}s (threshold: {t.excessive_writes_count})",
                now,
            ))
        return alerts

    async def _repeated_failures(self, now: int) -> list[dict]:
        t = self.thresholds
        rows = await self.events.count_by_session(POST_TOOL_USE_FAILURE, now - t.repeated_failures_window_ms)
        alerts = []
        for row in rows:
            if row["count"] <= t.repeated_failures_count:
                continue
            label = agent_label(row["source_app"], row["session_id"])
            severity = "critical" if row["count"] > t.critical_failures_count else "warning"
            alerts.append(_alert(
                "repeated_failures",
                severity,
                row["session_id"],
                row["source_app"],
                f"Agent {label} had {row['count']} tool failures in "
                f"{t.repeated_failures_window_ms // 1000}s (threshold: {t.repeated_failures_count})",
                now,
            ))
        return alerts
