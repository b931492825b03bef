import hashlib
import hmac
import json
import unittest

import aiosqlite

from agentpulse.db.sqlite_migrations import run_migrations
from agentpulse.hook_events import HookEvent
from agentpulse.services.background import BackgroundWorker
from agentpulse.services.webhooks import (
    WebhookDispatcher,
    alert_body,
    build_headers,
    sign_payload,
    validate_webhook_url,
    webhook_matches,
)

NOW = 1_760_000_000_000


class WebhookUrlValidationTests(unittest.TestCase):
    def test_accepted_urls(self) -> None:
        for url in (
            "https://hooks.example.com/x",
            "http://localhost:8080/hook",
            "http://[::1]:9000/",
            "https://localhost/hook",
            "https://[2606:4700:4700::1111]/hook",
            "https://8.8.8.8/hook",
        ):
            with self.subTest(url=url):
                self.assertIsNone(validate_webhook_url(url))

    def test_rejected_urls(self) -> None:
        cases = {
            "ftp://example.com/": "URL must use http or https protocol",
            "not a url": "URL must use http or https protocol",
            "http://example.com/hook": "Non-localhost URLs must use https",
            "https://10.1.2.3/hook": "Webhook URLs must not point to private/internal IP addresses",
            "https://192.168.1.10/hook": "Webhook URLs must not point to private/internal IP addresses",
            "https://169.254.169.254/latest": "Webhook URLs must not point to private/internal IP addresses",
            "https://127.0.0.1/hook": "Webhook URLs must not point to private/internal IP addresses",
            "http://127.0.0.1:9000/": "Webhook URLs must not point to private/internal IP addresses",
            "https://[fe80::1]/hook": "Webhook URLs must not point to private/internal IP addresses",
            "https://[fd00::1]/hook": "Webhook URLs must not point to private/internal IP addresses",
            "https://[::ffff:10.0.0.1]/hook": "Webhook URLs must not point to private/internal IP addresses",
            "https://[::ffff:169.254.169.254]/": "Webhook URLs must not point to private/internal IP addresses",
            "https://": "Invalid URL format",
        }
        for url, message in cases.items():
            with self.subTest(url=url):
                self.assertEqual(validate_webhook_url(url), message)


class WebhookSigningTests(unittest.TestCase):
    def test_signature_is_hmac_sha256_of_body(self) -> None:
        body = json.dumps({"a": 1})
        expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        self.assertEqual(sign_payload(body, "s3cret"), expected)

        headers = build_headers("Stop", body, "s3cret")
        self.assertEqual(headers["X-AgentPulse-Signature"], f"sha256={expected}")
        self.assertEqual(headers["X-AgentPulse-Event"], "Stop")
        self.assertEqual(headers["Content-Type"], "application/json")

    def test_no_signature_without_secret(self) -> None:
        self.assertNotIn("X-AgentPulse-Signature", build_headers("Stop", "{}", ""))

    def test_filters(self) -> None:
        hook = {"event_types": ["Stop", "alert"], "project_filter": "alpha"}
        self.assertTrue(webhook_matches(hook, "Stop", "alpha"))
        self.assertFalse(webhook_matches(hook, "Stop", "beta"))
        self.assertFalse(webhook_matches(hook, "PreToolUse", "alpha"))
        self.assertTrue(webhook_matches({"event_types": [], "project_filter": ""}, "Anything", "any"))

    def test_alert_body_shape(self) -> None:
        alert = {"source_app": "alpha", "session_id": "s1", "detected_at": NOW, "message": "stuck"}
        body = alert_body(alert)
        self.assertEqual(body["event_type"], "alert")
        self.assertEqual(body["summary"], "stuck")
        self.assertEqual(body["payload"], alert)


class WebhookDispatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.sent: list[tuple] = []
        self.status = (200, "")
        self.worker = BackgroundWorker()
        self.dispatcher = WebhookDispatcher(self.db, self.worker, sender=self._sender)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _sender(self, url, body, headers, timeout):
        self.sent.append((url, body, headers, timeout))
        return self.status

    async def _create(self, hook_id: str, **fields) -> None:
        webhook = {"id": hook_id, "name": hook_id, "url": f"https://example.com/{hook_id}", **fields}
        await self.dispatcher.webhooks.create(webhook, NOW)

    def _event(self, event_type: str = "Stop", app: str = "alpha") -> HookEvent:
        return HookEvent(source_app=app, session_id="s1", hook_event_type=event_type, payload={}, timestamp=NOW)

    async def test_dispatch_queues_matching_active_hooks_only(self) -> None:
        await self._create("all")
        await self._create("stops", event_types=["Stop"], secret="k")
        await self._create("beta-only", project_filter="beta")
        await self._create("off", active=False)

        queued = await self.dispatcher.dispatch_event(self._event())
        self.assertEqual(queued, 2)
        self.assertEqual(self.sent, [])

        await self.worker.drain()
        urls = sorted(s[0] for s in self.sent)
        self.assertEqual(urls, ["https://example.com/all", "https://example.com/stops"])
        signed = next(s for s in self.sent if s[0].endswith("/stops"))
        self.assertTrue(signed[2]["X-AgentPulse-Signature"].startswith("sha256="))

        stored = await self.dispatcher.webhooks.get("all")
        self.assertEqual(stored["trigger_count"], 1)
        self.assertEqual(stored["last_status"], 200)
        self.assertEqual(stored["failure_count"], 0)

    async def test_failed_delivery_is_recorded_not_raised(self) -> None:
        await self._create("broken")
        self.status = (0, "connection refused")
        await self.dispatcher.dispatch_event(self._event())
        await self.worker.drain()

        stored = await self.dispatcher.webhooks.get("broken")
        self.assertEqual(stored["failure_count"], 1)
        self.assertEqual(stored["last_error"], "connection refused")
        self.assertEqual(self.worker.failures, 0)

    async def test_alerts_dispatch_with_alert_event_type(self) -> None:
        await self._create("alerts", event_types=["alert"])
        queued = await self.dispatcher.dispatch_alerts([
            {"id": "stuck_agent-s1-alpha", "source_app": "alpha", "session_id": "s1", "message": "m", "detected_at": NOW},
        ])
        self.assertEqual(queued, 1)
        await self.worker.drain()
        self.assertEqual(self.sent[0][2]["X-AgentPulse-Event"], "alert")
        self.assertEqual(json.loads(self.sent[0][1])["event_type"], "alert")

    async def test_no_worker_means_no_dispatch(self) -> None:
        await self._create("all")
        dispatcher = WebhookDispatcher(self.db, None, sender=self._sender)
        self.assertEqual(await dispatcher.dispatch_event(self._event()), 0)

    async def test_test_webhook_reports_outcome(self) -> None:
        await self._create("t")
        result = await self.dispatcher.test_webhook(await self.dispatcher.webhooks.get("t"))
        self.assertEqual(result, {"success": True, "status": 200, "error": None})

        self.status = (500, "Internal Server Error")
        result = await self.dispatcher.test_webhook(await self.dispatcher.webhooks.get("t"))
        self.assertFalse(result["success"])
        self.assertEqual(result["status"], 500)


if __name__ == "__main__":
    unittest.main()
