"""Outbound webhook validation, signing and delivery.

Delivery is fire-and-forget: the dispatcher only enqueues work on the shared
background worker, and each attempt (one per webhook, no retries) records its
outcome on the webhook row.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import ipaddress
import json
import logging
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import aiosqlite
import requests

from agentpulse import config
from agentpulse.date_utils import now_ms
from agentpulse.db.repositories.webhooks import SqliteWebhookRepository
from agentpulse.hook_events import HookEvent
from agentpulse.observability import record_webhook_delivery
from agentpulse.services.background import BackgroundWorker

logger = logging.getLogger("agentpulse.webhooks")

ALERT_EVENT_TYPE = "alert"
TEST_EVENT_TYPE = "TestWebhook"

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}
_BLOCKED_IPV4 = tuple(
    ipaddress.ip_network(cidr)
    for cidr in ("127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "169.254.0.0/16", "0.0.0.0/8")
)


def validate_webhook_url(url: str) -> str | None:
    """Return an error message for an unsafe URL, or None when it is acceptable.

    Plain http is only allowed for the local machine. Literal private,
    loopback and link-local addresses are rejected unless the host is
    ``localhost`` or ``::1``.
    """
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return "Invalid URL format"
    if parsed.scheme not in ("http", "https"):
        return "URL must use http or https protocol"
    if not parsed.hostname:
        return "Invalid URL format"

    hostname = parsed.hostname
    if parsed.scheme == "http" and hostname not in _LOCAL_HOSTS:
        return "Non-localhost URLs must use https"

    if hostname in ("localhost", "::1"):
        return None
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return None
    if address.version == 6 and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if address.version == 4:
        blocked = any(address in network for network in _BLOCKED_IPV4)
    else:
        blocked = address.is_private or address.is_link_local or address.is_loopback or address.is_unspecified
    if blocked:
        return "Webhook URLs must not point to private/internal IP addresses"
    return None


def sign_payload(body: str, secret: str) -> str:
    if not secret:
        return ""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def build_headers(event_type: str, body: str, secret: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": config.WEBHOOK_USER_AGENT,
        "X-AgentPulse-Event": event_type,
    }
    signature = sign_payload(body, secret)
    if signature:
        headers["X-AgentPulse-Signature"] = f"sha256={signature}"
    return headers


def webhook_matches(webhook: dict, event_type: str, project_name: str) -> bool:
    event_types = webhook.get("event_types") or []
    if event_types and event_type not in event_types:
        return False
    project_filter = webhook.get("project_filter") or ""
    if project_filter and project_filter != project_name:
        return False
    return True


def event_body(event: HookEvent) -> dict:
    return {
        "event_type": event.hook_event_type,
        "source_app": event.source_app,
        "session_id": event.session_id,
        "timestamp": event.timestamp,
        "payload": event.payload,
        "summary": event.summary,
    }


def alert_body(alert: dict) -> dict:
    return {
        "event_type": ALERT_EVENT_TYPE,
        "source_app": alert.get("source_app", ""),
        "session_id": alert.get("session_id", ""),
        "timestamp": alert.get("detected_at"),
        "payload": alert,
        "summary": alert.get("message", ""),
    }


def post_webhook(url: str, body: str, headers: dict[str, str], timeout: float) -> tuple[int, str]:
    """Blocking POST. Returns ``(status, error)``; status is 0 on transport failure."""
    try:
        response = requests.post(url, data=body.encode("utf-8"), headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        return 0, str(exc) or exc.__class__.__name__
    if response.ok:
        return response.status_code, ""
    return response.status_code, response.reason or f"HTTP {response.status_code}"


class WebhookDispatcher:
    def __init__(
        self,
        db: aiosqlite.Connection,
        worker: Optional[BackgroundWorker] = None,
        timeout_seconds: float = config.WEBHOOK_TIMEOUT_SECONDS,
        sender: Callable[[str, str, dict[str, str], float], tuple[int, str]] = post_webhook,
    ):
        self.webhooks = SqliteWebhookRepository(db)
        self.worker = worker
        self.timeout_seconds = timeout_seconds
        self._send = sender

    async def dispatch_event(self, event: HookEvent) -> int:
        return await self._dispatch(event.hook_event_type, event.source_app, event_body(event))

    async def dispatch_alerts(self, alerts: list[dict]) -> int:
        queued = 0
        for alert in alerts:
            queued += await self._dispatch(ALERT_EVENT_TYPE, alert.get("source_app", ""), alert_body(alert))
        return queued

    async def _dispatch(self, event_type: str, project_name: str, body: dict) -> int:
        """Enqueue one delivery per matching active webhook. Returns the number queued."""
        if self.worker is None:
            return 0
        queued = 0
        serialized = json.dumps(body, default=str)
        for webhook in await self.webhooks.list_all(active_only=True):
            if not webhook_matches(webhook, event_type, project_name):
                continue
            if self.worker.submit(f"webhook:{webhook['id']}", self.deliver, webhook, event_type, serialized):
                queued += 1
        return queued

    async def deliver(self, webhook: dict, event_type: str, body: str) -> tuple[int, str]:
        headers = build_headers(event_type, body, webhook.get("secret") or "")
        status, error = await asyncio.to_thread(
            self._send, webhook["url"], body, headers, self.timeout_seconds
        )
        if error:
            logger.warning("Webhook %s delivery to %s failed: %s", webhook["id"], webhook["url"], error)
            record_webhook_delivery("failure")
        else:
            record_webhook_delivery("success")
        await self.webhooks.record_result(webhook["id"], now_ms(), status, error)
        return status, error

    async def test_webhook(self, webhook: dict) -> dict[str, Any]:
        now = now_ms()
        body = json.dumps({
            "event_type": TEST_EVENT_TYPE,
            "source_app": "AgentPulse",
            "session_id": f"test-{now}",
            "timestamp": now,
            "payload": {"message": "Test webhook from AgentPulse"},
            "summary": "Test webhook delivery",
        })
        headers = build_headers(TEST_EVENT_TYPE, body, webhook.get("secret") or "")
        status, error = await asyncio.to_thread(
            self._send, webhook["url"], body, headers, self.timeout_seconds
        )
        return {"success": not error, "status": status, "error": error or None}
