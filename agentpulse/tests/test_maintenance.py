import asyncio
import tempfile
import unittest
from unittest.mock import patch

import aiosqlite

from agentpulse.broadcast import Broadcaster
from agentpulse.db.sqlite_migrations import run_migrations
from agentpulse.db.sweeper import MaintenanceScheduler
from agentpulse.hook_events import HookEvent
from agentpulse.observability import otel
from agentpulse.services.alerts import AlertEngine
from agentpulse.services.background import BackgroundWorker
from agentpulse.services.branch_cache import BranchCache, detect_git_branch
from agentpulse.services.detectors import detect_dev_server, detect_test_results, merge_dev_server
from agentpulse.services.ingest import EventValidationError, IngestionService, validate_event
from agentpulse.services.lifecycle import SessionLifecycleEngine
from agentpulse.services.retention import RetentionService

NOW = 1_760_000_000_000
MINUTE = 60_000


class _FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[dict] = []

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


class _SlowSocket(_FakeSocket):
    async def send_json(self, message: dict) -> None:
        await asyncio.sleep(10)


class _HungGit:
    def __init__(self) -> None:
        self.returncode = None
        self.killed = False
        self.waited = False

    async def communicate(self):
        await asyncio.sleep(10)
        return b"", b""

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        self.waited = True
        return self.returncode


class _FakeDispatcher:
    def __init__(self) -> None:
        self.alert_batches: list[list[dict]] = []
        self.events: list[HookEvent] = []

    async def dispatch_alerts(self, alerts: list[dict]) -> int:
        self.alert_batches.append(alerts)
        return len(alerts)

    async def dispatch_event(self, event: HookEvent) -> int:
        self.events.append(event)
        return 0


class _StaticBranches:
    def __init__(self, branch: str) -> None:
        self.branch = branch
        self.calls = 0

    async def __call__(self, cwd: str) -> str:
        self.calls += 1
        return self.branch


def _tool_event(command: str, output, tool: str = "Bash", event_type: str = "PostToolUse") -> HookEvent:
    return HookEvent(
        source_app="alpha",
        session_id="s1",
        hook_event_type=event_type,
        payload={"tool_name": tool, "tool_input": {"command": command}, "tool_result": output},
        timestamp=NOW,
    )


class MaintenanceSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.branches = _StaticBranches("main")
        self.engine = SessionLifecycleEngine(
            self.db, branch_cache=BranchCache(detector=self.branches), clock=lambda: NOW, dev_notes_enabled=False
        )
        self.broadcaster = Broadcaster()
        self.socket = _FakeSocket()
        self.broadcaster.add(self.socket)
        self.dispatcher = _FakeDispatcher()
        self.scheduler = MaintenanceScheduler(
            self.engine,
            AlertEngine(self.db),
            RetentionService(self.db),
            broadcaster=self.broadcaster,
            webhooks=self.dispatcher,
            sweep_interval=3600,
            cleanup_interval=3600,
            port_scan_interval=3600,
        )

    async def asyncTearDown(self) -> None:
        await self.scheduler.stop()
        await self.db.close()

    async def test_sweep_broadcasts_and_dispatches_only_new_alerts(self) -> None:
        await self.engine.enrich(HookEvent(
            source_app="alpha", session_id="s1", hook_event_type="SessionStart", payload={}, timestamp=NOW,
        ))
        # Quiet past the stuck threshold but inside the idle window.
        await self.db.execute("UPDATE sessions SET last_event_at = ?", (NOW - 6 * MINUTE,))
        await self.db.commit()
        self.engine.idle_after_ms = 60 * MINUTE
        self.engine.stop_after_ms = 120 * MINUTE

        first = await self.scheduler.run_sweep(NOW)
        self.assertEqual([a["type"] for a in first["alerts"]], ["stuck_agent"])
        self.assertEqual(len(first["new_alerts"]), 1)
        self.assertEqual(len(self.dispatcher.alert_batches), 1)
        self.assertIn("alerts", self.socket.types())
        self.assertIn("conflicts", self.socket.types())
        self.assertNotIn("projects", self.socket.types())

        second = await self.scheduler.run_sweep(NOW + 1000)
        self.assertEqual(second["new_alerts"], [])
        self.assertEqual(len(self.dispatcher.alert_batches), 1)
        self.assertEqual(self.scheduler.last_sweep_at, NOW + 1000)

    async def test_sweep_reports_affected_projects(self) -> None:
        await self.engine.enrich(HookEvent(
            source_app="alpha", session_id="s1", hook_event_type="SessionStart", payload={}, timestamp=NOW,
        ))
        result = await self.scheduler.run_sweep(NOW + 3 * MINUTE)
        self.assertEqual(result["affected_projects"], ["alpha"])
        self.assertIn("projects", self.socket.types())
        self.assertIn("sessions", self.socket.types())

    async def test_run_cleanup_records_last_run(self) -> None:
        result = await self.scheduler.run_cleanup(NOW)
        self.assertEqual(result["events_deleted"], 0)
        self.assertEqual(self.scheduler.last_cleanup_at, NOW)

    async def test_port_scan_refreshes_branches_without_scanner(self) -> None:
        await self.engine.projects.upsert("alpha", NOW, path="/tmp/alpha", branch="main")
        self.branches.branch = "feature/new"
        changed = await self.scheduler.run_port_scan()
        self.assertEqual(changed, ["alpha"])
        self.assertEqual((await self.engine.projects.get("alpha"))["current_branch"], "feature/new")
        self.assertIn("projects", self.socket.types())

    async def test_start_and_stop(self) -> None:
        await self.scheduler.start()
        self.assertTrue(self.scheduler.is_running)
        await self.scheduler.start()
        await self.scheduler.stop()
        self.assertFalse(self.scheduler.is_running)


class BackgroundWorkerTests(unittest.IsolatedAsyncioTestCase):
    async def test_failures_are_counted_not_raised(self) -> None:
        worker = BackgroundWorker()
        seen = []

        async def ok(value):
            seen.append(value)

        def boom():
            raise RuntimeError("kaput")

        worker.submit("ok", ok, 1)
        worker.submit("boom", boom)
        worker.submit("sync", seen.append, 2)
        with self.assertLogs("agentpulse.background", level="WARNING"):
            await worker.drain()
        self.assertEqual(seen, [1, 2])
        self.assertEqual(worker.completed, 2)
        self.assertEqual(worker.failures, 1)
        self.assertEqual(worker.last_error, "boom: kaput")
        self.assertEqual(worker.pending, 0)

    async def test_full_queue_drops(self) -> None:
        worker = BackgroundWorker(maxsize=1)
        self.assertTrue(worker.submit("a", print))
        self.assertFalse(worker.submit("b", print))
        self.assertEqual(worker.dropped, 1)


class BranchCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_ttl_and_eviction(self) -> None:
        clock = [0.0]
        detector = _StaticBranches("main")
        cache = BranchCache(ttl_seconds=15, max_entries=2, detector=detector, clock=lambda: clock[0])

        self.assertEqual(await cache.get("/a"), "main")
        self.assertEqual(await cache.get("/a"), "main")
        self.assertEqual(detector.calls, 1)

        clock[0] = 15
        await cache.get("/a")
        self.assertEqual(detector.calls, 2)

        await cache.get("/b")
        await cache.get("/c")
        self.assertEqual(len(cache), 2)
        self.assertIsNone(cache.peek("/a"))

        cache.invalidate()
        self.assertEqual(len(cache), 0)
        self.assertEqual(await cache.get(""), "")

    async def test_engine_keeps_an_injected_empty_cache(self) -> None:
        db = await aiosqlite.connect(":memory:")
        try:
            cache = BranchCache(detector=_StaticBranches("main"))
            self.assertEqual(len(cache), 0)
            engine = SessionLifecycleEngine(db, branch_cache=cache, dev_notes_enabled=False)
            self.assertIs(engine.branch_cache, cache)
        finally:
            await db.close()

    async def test_hung_git_is_killed_and_reaped(self) -> None:
        proc = _HungGit()

        async def spawn(*args, **kwargs):
            return proc

        with tempfile.TemporaryDirectory() as cwd:
            with patch("asyncio.create_subprocess_exec", new=spawn):
                with self.assertLogs("agentpulse.git", level="WARNING"):
                    branch = await detect_git_branch(cwd, timeout=0.01)
        self.assertEqual(branch, "")
        self.assertTrue(proc.killed)
        self.assertTrue(proc.waited)


class BroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_subscriber_is_dropped(self) -> None:
        broadcaster = Broadcaster()
        good, bad = _FakeSocket(), _FakeSocket(fail=True)
        broadcaster.add(good)
        broadcaster.add(bad)
        with self.assertLogs("agentpulse.broadcast", level="WARNING"):
            delivered = await broadcaster.send("event", {"id": 1})
        self.assertEqual(delivered, 1)
        self.assertEqual(len(broadcaster), 1)
        self.assertEqual(good.messages, [{"type": "event", "data": {"id": 1}}])

    async def test_slow_subscriber_times_out_without_blocking_others(self) -> None:
        broadcaster = Broadcaster(send_timeout=0.05)
        good, slow = _FakeSocket(), _SlowSocket()
        broadcaster.add(slow)
        broadcaster.add(good)
        with self.assertLogs("agentpulse.broadcast", level="WARNING"):
            delivered = await asyncio.wait_for(broadcaster.send("event", {"id": 2}), timeout=1)
        self.assertEqual(delivered, 1)
        self.assertEqual(good.messages, [{"type": "event", "data": {"id": 2}}])
        self.assertEqual(len(broadcaster), 1)


class IngestTests(unittest.IsolatedAsyncioTestCase):
    def test_validate_event(self) -> None:
        event = validate_event({
            "source_app": "a", "session_id": "s", "hook_event_type": "Stop", "payload": {}, "id": 99,
        })
        self.assertIsNone(event.id)
        self.assertGreater(event.timestamp, 0)

        with self.assertRaises(EventValidationError) as ctx:
            validate_event({}, body_size=10, max_bytes=5)
        self.assertEqual(ctx.exception.status_code, 413)

        with self.assertRaises(EventValidationError) as ctx:
            validate_event({"source_app": "a", "session_id": "s", "hook_event_type": "Stop"})
        self.assertIn("payload", str(ctx.exception))

    async def test_ingest_broadcasts_and_dispatches(self) -> None:
        db = await aiosqlite.connect(":memory:")
        db.row_factory = aiosqlite.Row
        try:
            await run_migrations(db)
            engine = SessionLifecycleEngine(db, branch_cache=BranchCache(detector=_StaticBranches("")), dev_notes_enabled=False)
            broadcaster = Broadcaster()
            socket = _FakeSocket()
            broadcaster.add(socket)
            dispatcher = _FakeDispatcher()
            service = IngestionService(engine, broadcaster, dispatcher)

            await service.ingest(HookEvent(
                source_app="a", session_id="s", hook_event_type="SubagentStart",
                payload={"agent_id": "a:child"},
            ))
            self.assertEqual(socket.types(), ["event", "projects", "sessions", "topology"])
            self.assertEqual(len(dispatcher.events), 1)
        finally:
            await db.close()


class _Instrument:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def add(self, value, labels) -> None:
        self.calls.append((value, labels))

    record = add


class TelemetryTests(unittest.TestCase):
    def test_helpers_are_noops_without_instruments(self) -> None:
        otel.record_ingestion("Stop", "ok", 1.5, project="alpha")
        otel.record_token_cost(project="alpha", model="", token_input=10, token_output=0, cost_usd=0.1)
        with otel.start_span("noop") as span:
            self.assertIsNone(span)

    def test_token_cost_emits_per_direction_with_default_labels(self) -> None:
        tokens, cost = _Instrument(), _Instrument()
        instruments = {otel.ESTIMATED_TOKENS.name: tokens, otel.ESTIMATED_COST.name: cost}
        with patch.dict(otel._state.otel, instruments):
            otel.record_token_cost(project="alpha", model="", token_input=120, token_output=0, cost_usd=0.002)
        self.assertEqual(tokens.calls, [(120, {"model": "unknown", "direction": "input", "project": "alpha"})])
        self.assertEqual(cost.calls, [(0.002, {"model": "unknown", "project": "alpha"})])


class DetectorTests(unittest.TestCase):
    def test_pytest_summary(self) -> None:
        self.assertEqual(
            detect_test_results(_tool_event("pytest -q", "3 failed, 12 passed in 1.2s")),
            ("failing", "12 passed, 3 failed"),
        )
        self.assertEqual(
            detect_test_results(_tool_event("bun test", {"stdout": "20 pass\n20 tests passed"})),
            ("passing", "20 passed"),
        )

    def test_non_test_commands_are_ignored(self) -> None:
        self.assertIsNone(detect_test_results(_tool_event("ls", "3 passed")))
        self.assertIsNone(detect_test_results(_tool_event("pytest", "3 passed", event_type="PreToolUse")))
        self.assertIsNone(detect_test_results(_tool_event("pytest", "no summary here")))

    def test_dev_server_detection(self) -> None:
        self.assertEqual(
            detect_dev_server(_tool_event("npx next dev", "ready - started server on http://localhost:3000")),
            {"port": 3000, "type": "next"},
        )
        self.assertIsNone(detect_dev_server(_tool_event("npm run dev", "starting...")))
        self.assertEqual(
            merge_dev_server([{"port": 3000, "type": "dev"}], {"port": 3000, "type": "next"}),
            [{"port": 3000, "type": "next"}],
        )


if __name__ == "__main__":
    unittest.main()
