import asyncio
import json
import unittest
from unittest.mock import patch

import aiosqlite

from agentpulse.db.sqlite_migrations import run_migrations
from agentpulse.hook_events import HookEvent
from agentpulse.services.branch_cache import BranchCache
from agentpulse.services.costs import estimate_event_tokens
from agentpulse.services.ingest import IngestionService
from agentpulse.services.lifecycle import SessionLifecycleEngine, capture_topic, health_trend, score_health

BASE = 1_760_000_000_000
MINUTE = 60_000


class _Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class _RecordingWorker:
    def __init__(self) -> None:
        self.jobs: list[tuple] = []

    def submit(self, name, func, *args) -> bool:
        self.jobs.append((name, func, args))
        return True


async def _no_git(cwd: str) -> str:
    return ""


class LifecycleEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.clock = _Clock(BASE)
        self.worker = _RecordingWorker()
        self.engine = SessionLifecycleEngine(
            self.db,
            branch_cache=BranchCache(detector=_no_git),
            worker=self.worker,
            clock=self.clock,
            dev_notes_enabled=False,
        )
        self.ingest = IngestionService(self.engine)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _send(self, event_type: str, session_id: str = "sess-1", app: str = "alpha", **fields) -> HookEvent:
        event = HookEvent(
            source_app=app,
            session_id=session_id,
            hook_event_type=event_type,
            payload=fields.pop("payload", {}),
            timestamp=self.clock.now,
            **fields,
        )
        return await self.ingest.ingest(event)

    async def _session(self, session_id: str = "sess-1", app: str = "alpha") -> dict:
        return await self.engine.sessions.get(session_id, app)

    async def test_session_start_creates_project_and_session(self) -> None:
        await self._send("SessionStart", payload={"branch": "feature/AUTH-123-login-flow"}, model_name="claude-sonnet-4")

        project = await self.engine.projects.get("alpha")
        self.assertEqual(project["current_branch"], "feature/AUTH-123-login-flow")
        self.assertEqual(project["active_sessions"], 1)

        session = await self._session()
        self.assertEqual(session["status"], "active")
        self.assertEqual(session["project_name"], "alpha")
        self.assertEqual(session["model_name"], "claude-sonnet-4")
        self.assertEqual(session["task_context"]["display"], "AUTH-123: Login Flow")

    async def test_status_transitions_follow_event_types(self) -> None:
        await self._send("SessionStart")
        await self._send("Stop")
        self.assertEqual((await self._session())["status"], "waiting")

        await self._send("UserPromptSubmit", payload={"prompt": "Fix the login bug\nMore detail"})
        session = await self._session()
        self.assertEqual(session["status"], "active")
        self.assertEqual(session["topic"], "Fix the login bug")

        await self._send("Notification", payload={"message": "Needs permission"})
        self.assertEqual((await self._session())["status"], "waiting")

        await self._send("PreToolUse", payload={"tool_name": "Read", "tool_input": {"file_path": "/x/a.py"}})
        session = await self._session()
        self.assertEqual(session["status"], "active")
        self.assertEqual(session["event_count"], 5)

    async def test_topic_is_captured_once(self) -> None:
        await self._send("SessionStart")
        await self._send("UserPromptSubmit", payload={"prompt": "first topic"})
        await self._send("UserPromptSubmit", payload={"prompt": "second topic"})
        self.assertEqual((await self._session())["topic"], "first topic")

    async def test_stopped_session_is_not_reactivated_by_activity(self) -> None:
        await self._send("SessionStart")
        await self._send("SessionEnd")
        session = await self._session()
        self.assertEqual(session["status"], "stopped")
        count = session["event_count"]

        await self._send("PostToolUse", payload={"tool_name": "Bash", "tool_input": {"command": "ls"}})
        await self._send("UserPromptSubmit", payload={"prompt": "late"})
        session = await self._session()
        self.assertEqual(session["status"], "stopped")
        self.assertEqual(session["event_count"], count)
        self.assertEqual((await self.engine.projects.get("alpha"))["active_sessions"], 0)

        await self._send("SessionStart")
        self.assertEqual((await self._session())["status"], "active")

    async def test_session_end_synthesizes_single_dev_log_with_commits(self) -> None:
        await self._send("SessionStart", payload={"branch": "fix/typo"})
        await self._send(
            "PostToolUse",
            payload={"tool_name": "Edit", "tool_input": {"file_path": "/repo/src/app.py"}},
        )
        await self._send(
            "PostToolUse",
            payload={"tool_name": "Bash", "tool_input": {"command": 'git commit -m "Fix typo in header"'}},
        )
        await self._send("SessionEnd")
        await self._send("SessionEnd")

        logs = await self.engine.list_dev_logs("alpha")
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["summary"], "Fix typo in header")
        self.assertEqual(logs[0]["files_changed"], ["/repo/src/app.py"])
        self.assertEqual(logs[0]["tool_breakdown"], {"Edit": 1, "Bash": 1})

    async def test_stop_event_does_not_create_dev_log(self) -> None:
        await self._send("SessionStart")
        await self._send("Stop", summary="Did some work")
        self.assertEqual(await self.engine.list_dev_logs(), [])

    async def test_sweep_moves_active_to_idle_to_stopped_with_one_dev_log(self) -> None:
        await self._send("SessionStart")

        self.clock.now = BASE + 3 * MINUTE
        affected = await self.engine.sweep()
        self.assertEqual(affected, {"alpha"})
        self.assertEqual((await self._session())["status"], "idle")

        self.clock.now = BASE + 11 * MINUTE
        affected = await self.engine.sweep()
        self.assertEqual(affected, {"alpha"})
        session = await self._session()
        self.assertEqual(session["status"], "stopped")
        self.assertEqual(session["ended_at"], BASE + 11 * MINUTE)

        self.clock.now = BASE + 12 * MINUTE
        self.assertEqual(await self.engine.sweep(), set())
        self.assertEqual(len(await self.engine.list_dev_logs()), 1)
        self.assertEqual((await self.engine.projects.get("alpha"))["active_sessions"], 0)

    async def test_single_late_sweep_goes_straight_to_stopped(self) -> None:
        await self._send("SessionStart")
        self.clock.now = BASE + 11 * MINUTE
        await self.engine.sweep()
        self.assertEqual((await self._session())["status"], "stopped")
        self.assertEqual(len(await self.engine.list_dev_logs()), 1)

    async def test_waiting_session_is_not_idled_but_is_stopped(self) -> None:
        await self._send("SessionStart")
        await self._send("Stop")
        self.clock.now = BASE + 5 * MINUTE
        await self.engine.sweep()
        self.assertEqual((await self._session())["status"], "waiting")
        self.clock.now = BASE + 11 * MINUTE
        await self.engine.sweep()
        self.assertEqual((await self._session())["status"], "stopped")

    async def test_events_without_session_start_create_session_lazily(self) -> None:
        await self._send("PreToolUse", session_id="late", payload={"tool_name": "Read"})
        session = await self._session("late")
        self.assertEqual(session["status"], "active")
        self.assertEqual(session["event_count"], 1)
        self.assertEqual((await self.engine.projects.get("alpha"))["active_sessions"], 1)

    async def test_pre_compact_history_is_capped(self) -> None:
        await self._send("SessionStart")
        await self._send("Stop")
        for i in range(25):
            self.clock.now = BASE + i + 1
            await self._send("PreCompact")
        session = await self._session()
        self.assertEqual(session["status"], "waiting")
        self.assertEqual(session["compaction_count"], 25)
        self.assertEqual(len(session["compaction_history"]), 20)
        self.assertEqual(session["compaction_history"][0], BASE + 6)
        self.assertEqual(session["last_compaction_at"], BASE + 25)

    async def test_subagent_start_and_stop_update_topology(self) -> None:
        await self._send("SessionStart", session_id="parent")
        await self._send("SessionStart", session_id="child")
        await self._send("SubagentStart", session_id="parent", payload={"agent_id": "alpha:child"})

        nodes = await self.engine.topology.tree()
        self.assertEqual(len(nodes), 1)
        self.assertEqual(nodes[0]["agent_id"], "alpha:child")
        self.assertEqual(nodes[0]["parent_id"], "alpha:parent")
        self.assertEqual(nodes[0]["status"], "active")

        await self._send("SubagentStop", session_id="parent", payload={"agent_id": "alpha:child"})
        nodes = await self.engine.topology.tree("alpha")
        self.assertEqual(nodes[0]["status"], "stopped")

    async def test_subagent_node_carries_child_session_context(self) -> None:
        await self._send("SessionStart", session_id="parent", payload={"branch": "feature/AUTH-1-parent-work"})
        await self._send("SessionStart", session_id="child", payload={"branch": "fix/child-work"})
        await self._send("SubagentStart", session_id="parent", payload={"agent_id": "alpha:child"})

        rows = await self.engine.topology.nodes.list_nodes()
        self.assertEqual(len(rows), 1)
        self.assertEqual((rows[0]["session_id"], rows[0]["source_app"]), ("child", "alpha"))

        node = (await self.engine.topology.tree())[0]
        self.assertEqual(json.loads(node["task_context"])["prefix"], "fix")
        self.assertEqual(node["parent_id"], "alpha:parent")

    async def test_subagent_start_without_id_is_noop(self) -> None:
        await self._send("SessionStart")
        await self._send("SubagentStart", payload={})
        self.assertEqual(await self.engine.topology.tree(), [])
        self.assertEqual((await self._session())["status"], "active")

    async def test_test_output_sets_project_test_status(self) -> None:
        await self._send("SessionStart")
        await self._send(
            "PostToolUse",
            payload={
                "tool_name": "Bash",
                "tool_input": {"command": "npx jest"},
                "tool_result": {"stdout": "Tests:       2 failed, 10 passed, 12 total"},
            },
        )
        project = await self.engine.projects.get("alpha")
        self.assertEqual(project["test_status"], "failing")
        self.assertEqual(project["test_summary"], "10 passed, 2 failed")

    async def test_dev_server_detection_merges_by_port(self) -> None:
        await self._send("SessionStart")
        for _ in range(2):
            await self._send(
                "PostToolUse",
                payload={
                    "tool_name": "Bash",
                    "tool_input": {"command": "npm run dev"},
                    "tool_result": "ready on http://localhost:5173",
                },
            )
        project = await self.engine.projects.get("alpha")
        self.assertEqual(project["dev_servers"], [{"port": 5173, "type": "dev"}])

    async def test_file_access_feeds_conflict_detection(self) -> None:
        for app in ("alpha", "beta"):
            await self._send("SessionStart", app=app)
            await self._send(
                "PostToolUse",
                app=app,
                payload={"tool_name": "Write", "tool_input": {"file_path": f"/work/{app}/package.json"}},
            )
        conflicts = await self.engine.conflicts.active_conflicts(self.clock.now)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0]["severity"], "high")
        self.assertEqual(conflicts[0]["id"], "package.json:alpha,beta")

    async def test_costs_accumulate_per_session(self) -> None:
        await self._send("SessionStart", model_name="claude-opus-4")
        first = await self.engine.costs.costs.get("sess-1", "alpha")
        await self._send("UserPromptSubmit", payload={"prompt": "x" * 400})
        second = await self.engine.costs.costs.get("sess-1", "alpha")
        self.assertGreater(second["input_tokens"], first["input_tokens"])
        self.assertGreaterEqual(second["estimated_cost_usd"], first["estimated_cost_usd"])
        self.assertEqual(second["model_name"], "claude-opus-4")

    async def test_late_model_name_reprices_whole_session(self) -> None:
        await self._send("SessionStart")
        await self._send("UserPromptSubmit", payload={"prompt": "x" * 4000})
        before = await self.engine.costs.costs.get("sess-1", "alpha")
        self.assertEqual(before["model_name"], "")

        await self._send("Stop", model_name="claude-opus-4")
        after = await self.engine.costs.costs.get("sess-1", "alpha")
        self.assertEqual(after["model_name"], "claude-opus-4")
        self.assertAlmostEqual(
            after["estimated_cost_usd"],
            after["input_tokens"] * 15.0 / 1_000_000 + after["output_tokens"] * 75.0 / 1_000_000,
        )
        # Opus input is five times the default price, applied to every earlier token.
        self.assertGreater(after["estimated_cost_usd"], before["estimated_cost_usd"] * 5)

        await self._send("Stop")
        self.assertEqual((await self.engine.costs.costs.get("sess-1", "alpha"))["model_name"], "claude-opus-4")

    async def test_concurrent_events_for_one_session_lose_no_updates(self) -> None:
        await self._send("SessionStart", model_name="claude-sonnet-4")
        start = await self.engine.costs.costs.get("sess-1", "alpha")

        tool_events = [
            HookEvent(
                source_app="alpha",
                session_id="sess-1",
                hook_event_type="PostToolUse",
                payload={
                    "tool_name": "Bash",
                    "tool_input": {"command": f"echo {i}"},
                    "tool_result": "ok " * (i + 1),
                },
                timestamp=BASE + i + 1,
            )
            for i in range(10)
        ]
        expected_input = start["input_tokens"] + sum(estimate_event_tokens(e)[0] for e in tool_events)
        expected_output = start["output_tokens"] + sum(estimate_event_tokens(e)[1] for e in tool_events)
        await asyncio.gather(*(self.ingest.ingest(e) for e in tool_events))

        costs = await self.engine.costs.costs.get("sess-1", "alpha")
        self.assertEqual(costs["input_tokens"], expected_input)
        self.assertEqual(costs["output_tokens"], expected_output)
        self.assertEqual(costs["event_count"], 11)
        self.assertGreater(costs["estimated_cost_usd"], start["estimated_cost_usd"])

        await asyncio.gather(*(self._send("PreCompact") for _ in range(5)))
        session = await self._session()
        self.assertEqual(session["compaction_count"], 5)
        self.assertEqual(len(session["compaction_history"]), 5)

        await asyncio.gather(*(
            self._send(
                "PostToolUse",
                payload={
                    "tool_name": "Bash",
                    "tool_input": {"command": "npm run dev"},
                    "tool_result": f"ready on http://localhost:{port}",
                },
            )
            for port in (3000, 5173, 8080)
        ))
        project = await self.engine.projects.get("alpha")
        self.assertEqual(sorted(s["port"] for s in project["dev_servers"]), [3000, 5173, 8080])

    async def test_enrichment_failure_still_stores_event(self) -> None:
        with patch.object(self.engine, "enrich", side_effect=RuntimeError("boom")):
            with self.assertLogs("agentpulse.ingest", level="ERROR"):
                stored = await self._send("SessionStart")
        self.assertIsNotNone(stored.id)
        events = await self.engine.events.list_recent(10)
        self.assertEqual([e.id for e in events], [stored.id])
        self.assertIsNone(await self._session())

    async def test_dev_note_is_queued_when_enabled(self) -> None:
        self.engine.dev_notes_enabled = True
        await self._send("SessionStart", payload={"cwd": "/tmp/agentpulse-test-project"})
        await self._send("SessionEnd")
        self.assertEqual(len(self.worker.jobs), 1)
        name, _func, args = self.worker.jobs[0]
        self.assertEqual(name, "dev-note")
        self.assertEqual(args[1], "/tmp/agentpulse-test-project")
        self.assertEqual(args[2], ["/tmp/agentpulse-test-project"])


class HealthTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.clock = _Clock(BASE)
        self.engine = SessionLifecycleEngine(
            self.db, branch_cache=BranchCache(detector=_no_git), clock=self.clock, dev_notes_enabled=False
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_perfect_project_scores_100_and_stable_on_first_computation(self) -> None:
        await self.engine.projects.upsert("alpha", BASE)
        await self.engine.projects.set_test_status("alpha", "passing", "5 passed", BASE)
        await self.engine.sessions.start("s1", "alpha", "alpha", BASE)

        health = await self.engine.update_health("alpha")
        self.assertEqual(health["score"], 100)
        self.assertEqual(health["trend"], "stable")
        stored = (await self.engine.projects.get("alpha"))["health"]
        self.assertEqual(stored["score"], 100)

    async def test_health_is_throttled_unless_forced(self) -> None:
        await self.engine.projects.upsert("alpha", BASE)
        self.assertIsNotNone(await self.engine.update_health("alpha"))
        self.clock.now = BASE + 10_000
        self.assertIsNone(await self.engine.update_health("alpha"))
        self.assertIsNotNone(await self.engine.update_health("alpha", force=True))
        self.clock.now = BASE + 50_000
        self.assertIsNotNone(await self.engine.update_health("alpha"))

    async def test_throttle_state_is_per_instance(self) -> None:
        await self.engine.projects.upsert("alpha", BASE)
        await self.engine.update_health("alpha")
        other = SessionLifecycleEngine(self.db, branch_cache=BranchCache(detector=_no_git), clock=self.clock)
        self.assertIsNotNone(await other.update_health("alpha"))

    async def test_missing_project_returns_defaults(self) -> None:
        health = await self.engine.compute_health("ghost")
        self.assertEqual(health["score"], 50)
        self.assertEqual(health["activity_score"], 30)

    def test_score_components(self) -> None:
        self.assertEqual(score_health("failing", {"idle": 1}, 1, 1)["score"], round(0 + 0.3 * 60 + 0.3 * 50))
        self.assertEqual(score_health("unknown", {}, 0, 0)["score"], 59)
        self.assertEqual(score_health("passing", {"stopped": 3}, 0, 4)["error_rate_score"], 0)

    def test_trend_threshold(self) -> None:
        self.assertEqual(health_trend(80, None), "stable")
        self.assertEqual(health_trend(86, 80), "improving")
        self.assertEqual(health_trend(85, 80), "stable")
        self.assertEqual(health_trend(74, 80), "declining")


class TopicTests(unittest.TestCase):
    def test_summary_wins(self) -> None:
        self.assertEqual(capture_topic("  Refactor auth ", "ignored"), "Refactor auth")

    def test_long_prompt_is_truncated(self) -> None:
        topic = capture_topic(None, "a" * 200)
        self.assertEqual(len(topic), 120)
        self.assertTrue(topic.endswith("..."))

    def test_exactly_120_is_kept(self) -> None:
        self.assertEqual(capture_topic(None, "b" * 120), "b" * 120)


if __name__ == "__main__":
    unittest.main()
