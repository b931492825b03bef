"""Session lifecycle engine.

Consumes hook events in arrival order and maintains the derived Project,
Session, topology, cost, file-access and dev-log state.

Session status machine (initial ``active``, terminal ``stopped``)::

    SessionStart             -> active   (also restarts a stopped row)
    UserPromptSubmit, tools  -> active
    Stop, Notification       -> waiting
    SessionEnd               -> stopped  (+ dev log)
    sweep: active  --2 min-->  idle
    sweep: idle|waiting --10 min--> stopped (+ dev log)

Only ``SessionStart`` may write a stopped row; every other write is guarded
by ``status != 'stopped'`` in the repository.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

import aiosqlite

from agentpulse import config
from agentpulse.branch_parser import parse_branch
from agentpulse.date_utils import MINUTE_MS, now_ms
from agentpulse.db.repositories.dev_logs import SqliteDevLogRepository
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.db.repositories.projects import SqliteProjectRepository
from agentpulse.db.repositories.sessions import SqliteSessionRepository
from agentpulse.hook_events import (
    NOTIFICATION,
    POST_TOOL_USE,
    POST_TOOL_USE_FAILURE,
    PRE_COMPACT,
    PRE_TOOL_USE,
    SESSION_END,
    SESSION_START,
    STOP,
    SUBAGENT_START,
    SUBAGENT_STOP,
    USER_PROMPT_SUBMIT,
    WRITE_TOOLS,
    HookEvent,
)
from agentpulse.observability import record_enrichment_failure
from agentpulse.services.background import BackgroundWorker
from agentpulse.services.branch_cache import BranchCache
from agentpulse.services.conflicts import ConflictDetector
from agentpulse.services.costs import CostEstimator
from agentpulse.services.detectors import detect_dev_server, detect_test_results, merge_dev_server
from agentpulse.services.devlogs import synthesize_dev_log, write_dev_note
from agentpulse.services.topology import TopologyTracker

logger = logging.getLogger("agentpulse.lifecycle")

HEALTH_WINDOW_MS = 30 * MINUTE_MS
RECENTLY_STOPPED_MS = 30 * MINUTE_MS
TREND_DELTA = 5
TOPIC_MAX_LENGTH = 120

TEST_SCORES = {"passing": 100, "failing": 0}
DEFAULT_HEALTH = {
    "score": 50,
    "trend": "stable",
    "test_score": 50,
    "activity_score": 30,
    "error_rate_score": 100,
}


def capture_topic(summary: str | None, prompt: str) -> str:
    """Session topic from the event summary or the prompt's first line."""
    if summary and summary.strip():
        return summary.strip()
    first_line = (prompt or "").strip().split("\n", 1)[0].strip()
    if len(first_line) > TOPIC_MAX_LENGTH:
        return first_line[:TOPIC_MAX_LENGTH - 3] + "..."
    return first_line


def health_trend(score: int, previous: int | None) -> str:
    if previous is None:
        return "stable"
    if score - previous > TREND_DELTA:
        return "improving"
    if previous - score > TREND_DELTA:
        return "declining"
    return "stable"


def score_health(
    test_status: str,
    status_counts: dict[str, int],
    tool_successes: int,
    tool_failures: int,
) -> dict:
    test_score = TEST_SCORES.get(test_status, 50)
    if status_counts.get("active", 0) > 0:
        activity_score = 100
    elif status_counts.get("idle", 0) > 0:
        activity_score = 60
    else:
        activity_score = 30
    total = tool_successes + tool_failures
    if total:
        error_rate_score = max(0, round(100 - (tool_failures / total) * 100))
    else:
        error_rate_score = 100
    score = round(0.4 * test_score + 0.3 * activity_score + 0.3 * error_rate_score)
    return {
        "score": score,
        "test_score": test_score,
        "activity_score": activity_score,
        "error_rate_score": error_rate_score,
    }


class SessionLifecycleEngine:
    """Owns derived state. Mutable caches live on the instance, never globally."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        branch_cache: Optional[BranchCache] = None,
        health_timestamps: Optional[dict[str, int]] = None,
        worker: Optional[BackgroundWorker] = None,
        clock: Callable[[], int] = now_ms,
        idle_after_ms: int = config.IDLE_AFTER_SECONDS * 1000,
        stop_after_ms: int = config.STOP_AFTER_SECONDS * 1000,
        health_throttle_ms: int = config.HEALTH_THROTTLE_SECONDS * 1000,
        dev_notes_enabled: bool = config.DEV_NOTES_ENABLED,
    ):
        self.db = db
        self.projects = SqliteProjectRepository(db)
        self.sessions = SqliteSessionRepository(db)
        self.events = SqliteEventRepository(db)
        self.dev_logs = SqliteDevLogRepository(db)
        self.topology = TopologyTracker(db)
        self.costs = CostEstimator(db)
        self.conflicts = ConflictDetector(db, config.CONFLICT_RETENTION_HOURS)
        self.branch_cache = (
            branch_cache
            if branch_cache is not None
            else BranchCache(config.BRANCH_CACHE_TTL_SECONDS, config.BRANCH_CACHE_SIZE)
        )
        self.health_timestamps = health_timestamps if health_timestamps is not None else {}
        self.worker = worker
        self.clock = clock
        self.idle_after_ms = idle_after_ms
        self.stop_after_ms = stop_after_ms
        self.health_throttle_ms = health_throttle_ms
        self.dev_notes_enabled = dev_notes_enabled

    # ── Ingestion path ──────────────────────────────────────────────

    async def enrich(self, event: HookEvent, now: int | None = None) -> dict:
        """Apply one event to derived state.

        Returns a small change report (``topology_changed``, ``dev_log``) used
        to decide what to broadcast.
        """
        now = self.clock() if now is None else now
        project_name = event.source_app
        session_id = event.session_id
        app = event.source_app
        event_type = event.hook_event_type
        model_name = event.model_name or ""
        changes: dict = {"topology_changed": False, "dev_log": None}

        branch = await self._extract_branch(event)
        await self.projects.upsert(project_name, now, path=event.cwd, branch=branch)

        try:
            await self.costs.track(event, project_name, now)
        except Exception:
            logger.exception("Cost tracking failed for %s", event.agent_key)
            record_enrichment_failure("costs", project_name)

        if event_type == SESSION_START:
            await self.sessions.start(
                session_id, app, project_name, now,
                branch=branch,
                task_context=parse_branch(branch),
                model_name=model_name,
                cwd=event.cwd,
            )
            await self._refresh_session_count(project_name)

        elif event_type == SESSION_END:
            await self._ensure_session(event, project_name, branch, now)
            if await self.sessions.stop(session_id, app, now):
                changes["dev_log"] = await self.synthesize_dev_log(session_id, app, now)
            await self._refresh_session_count(project_name)

        elif event_type == STOP:
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_activity(session_id, app, now, "waiting", model_name)

        elif event_type == NOTIFICATION:
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_activity(session_id, app, now, "waiting", model_name)
            await self._refresh_session_branch(session_id, app, branch)

        elif event_type == USER_PROMPT_SUBMIT:
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_activity(session_id, app, now, "active", model_name)
            await self._refresh_session_branch(session_id, app, branch)
            topic = capture_topic(event.summary, event.prompt)
            if topic:
                await self.sessions.set_topic_once(session_id, app, topic)

        elif event_type in (PRE_TOOL_USE, POST_TOOL_USE):
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_activity(session_id, app, now, "active", model_name)
            if event_type == POST_TOOL_USE:
                await self._detect_from_tool_output(event, project_name, now)
                await self._track_file_access(event, project_name, now)

        elif event_type == POST_TOOL_USE_FAILURE:
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_activity(session_id, app, now, "active", model_name)

        elif event_type in (SUBAGENT_START, SUBAGENT_STOP):
            await self._ensure_session(event, project_name, branch, now)
            if event_type == SUBAGENT_START:
                session = await self.sessions.get(session_id, app)
                node_model = model_name or (session or {}).get("model_name") or ""
                changes["topology_changed"] = await self.topology.subagent_started(
                    event, (session or {}).get("project_name") or project_name, node_model, now
                )
            else:
                changes["topology_changed"] = await self.topology.subagent_stopped(event, now)
            await self.sessions.record_activity(session_id, app, now, "active", model_name)

        elif event_type == PRE_COMPACT:
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_compaction(session_id, app, now)
            await self.sessions.record_activity(session_id, app, now, None, model_name)

        else:
            await self._ensure_session(event, project_name, branch, now)
            await self.sessions.record_activity(session_id, app, now, "active", model_name)
            await self.topology.touch(event, now)

        await self.update_health(project_name, now)
        return changes

    async def _extract_branch(self, event: HookEvent) -> str:
        hint = event.branch_hint
        if hint:
            return hint
        if event.cwd:
            return await self.branch_cache.get(event.cwd)
        return ""

    async def _ensure_session(self, event: HookEvent, project_name: str, branch: str, now: int) -> None:
        created = await self.sessions.ensure(
            event.session_id,
            event.source_app,
            project_name,
            now,
            branch=branch,
            task_context=parse_branch(branch) if branch else {},
            model_name=event.model_name or "",
            cwd=event.cwd,
        )
        if created:
            await self._refresh_session_count(project_name)

    async def _refresh_session_count(self, project_name: str) -> None:
        count = await self.sessions.count_non_terminal(project_name)
        await self.projects.set_active_sessions(project_name, count)

    async def _refresh_session_branch(self, session_id: str, app: str, branch: str) -> None:
        if branch:
            await self.sessions.update_branch(session_id, app, branch, parse_branch(branch))

    async def _detect_from_tool_output(self, event: HookEvent, project_name: str, now: int) -> None:
        tests = detect_test_results(event)
        if tests:
            await self.projects.set_test_status(project_name, tests[0], tests[1], now)
        server = detect_dev_server(event)
        if server:
            project = await self.projects.get(project_name)
            servers = merge_dev_server((project or {}).get("dev_servers") or [], server)
            await self.projects.set_dev_servers(project_name, servers)

    async def _track_file_access(self, event: HookEvent, project_name: str, now: int) -> None:
        tool = event.tool_name
        if tool in WRITE_TOOLS:
            access_type = "write"
        elif tool == "Read":
            access_type = "read"
        else:
            return
        try:
            await self.conflicts.track(
                event.file_path, project_name, event.session_id, event.source_app, access_type, now
            )
        except Exception:
            logger.exception("File access tracking failed for %s", event.agent_key)
            record_enrichment_failure("conflicts", project_name)

    # ── Health ──────────────────────────────────────────────────────

    async def compute_health(self, project_name: str, now: int | None = None) -> dict:
        now = self.clock() if now is None else now
        project = await self.projects.get(project_name)
        if not project:
            return {**DEFAULT_HEALTH, "computed_at": now}
        counts = await self.sessions.status_counts(project_name)
        successes, failures = await self.events.tool_outcomes(project_name, now - HEALTH_WINDOW_MS)
        health = score_health(project.get("test_status") or "unknown", counts, successes, failures)
        previous = (project.get("health") or {}).get("score")
        health["trend"] = health_trend(health["score"], previous if isinstance(previous, (int, float)) else None)
        health["computed_at"] = now
        return health

    async def update_health(self, project_name: str, now: int | None = None, force: bool = False) -> dict | None:
        """Recompute and store project health, at most once per throttle window."""
        now = self.clock() if now is None else now
        last = self.health_timestamps.get(project_name)
        if not force and last is not None and now - last <= self.health_throttle_ms:
            return None
        try:
            health = await self.compute_health(project_name, now)
            await self.projects.set_health(project_name, health)
        except Exception:
            logger.exception("Health computation failed for %s", project_name)
            record_enrichment_failure("health", project_name)
            return None
        self.health_timestamps[project_name] = now
        return health

    # ── Dev logs ────────────────────────────────────────────────────

    async def synthesize_dev_log(self, session_id: str, source_app: str, now: int) -> dict | None:
        session = await self.sessions.get(session_id, source_app)
        if not session:
            return None
        events = await self.events.list_for_session(session_id, source_app)
        log = synthesize_dev_log(session, events, now)
        if not await self.dev_logs.insert(log):
            return None
        logger.info("Dev log created for %s:%s (%s events)", source_app, session_id, log["event_count"])
        if self.dev_notes_enabled and self.worker is not None and session.get("cwd"):
            known_paths = [p["path"] for p in await self.projects.list_with_paths()]
            self.worker.submit("dev-note", write_dev_note, log, session["cwd"], known_paths)
        return log

    # ── Sweeps ──────────────────────────────────────────────────────

    async def sweep(self, now: int | None = None) -> set[str]:
        """Idle/stop sweep. Returns the names of affected projects.

        Each step re-checks the stale predicate in its own UPDATE, so a
        concurrent event or a second sweep never double-processes a session.
        """
        now = self.clock() if now is None else now
        affected = await self.sessions.mark_idle(now - self.idle_after_ms)

        stop_cutoff = now - self.stop_after_ms
        for session in await self.sessions.list_stale(stop_cutoff):
            sid, app = session["session_id"], session["source_app"]
            if not await self.sessions.stop_if_stale(sid, app, stop_cutoff, now):
                continue
            affected.add(session["project_name"])
            logger.info("Session %s:%s stopped after inactivity", app, sid)
            try:
                await self.synthesize_dev_log(sid, app, now)
            except Exception:
                logger.exception("Dev log synthesis failed for %s:%s", app, sid)
                record_enrichment_failure("devlogs", session["project_name"])

        for project_name in affected:
            await self._refresh_session_count(project_name)
            await self.update_health(project_name, now, force=True)
        return affected

    async def refresh_branches(self) -> list[str]:
        """Re-detect branches of known project paths; returns changed projects."""
        changed = []
        for project in await self.projects.list_with_paths():
            self.branch_cache.invalidate(project["path"])
            branch = await self.branch_cache.get(project["path"])
            if branch and branch != project["current_branch"]:
                await self.projects.set_branch(project["name"], branch, self.clock())
                changed.append(project["name"])
        return changed

    # ── Queries ─────────────────────────────────────────────────────

    async def list_projects(self) -> list[dict]:
        return await self.projects.list_all()

    async def project_detail(self, name: str) -> dict | None:
        project = await self.projects.get(name)
        if not project:
            return None
        return {
            "project": project,
            "sessions": await self.sessions.list_for_project(name, 20),
            "dev_logs": await self.dev_logs.list_recent(10, name),
        }

    async def active_sessions(self, now: int | None = None) -> list[dict]:
        now = self.clock() if now is None else now
        return await self.sessions.list_active(now - RECENTLY_STOPPED_MS)

    async def list_dev_logs(self, project_name: str | None = None, limit: int | None = None) -> list[dict]:
        if limit is None:
            limit = 20 if project_name else 50
        return await self.dev_logs.list_recent(limit, project_name)
