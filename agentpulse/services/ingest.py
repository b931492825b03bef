"""Hook event ingestion: validate, store, enrich, broadcast."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from pydantic import ValidationError

from agentpulse import config
from agentpulse.broadcast import Broadcaster
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.hook_events import ALLOWED_EVENT_TYPES, REQUIRED_FIELDS, HookEvent
from agentpulse.observability import record_enrichment_failure, record_ingestion, start_span
from agentpulse.services.lifecycle import SessionLifecycleEngine
from agentpulse.services.webhooks import WebhookDispatcher

logger = logging.getLogger("agentpulse.ingest")


class EventValidationError(ValueError):
    """Raised for client-side problems with an inbound event."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def validate_event(data: Any, body_size: int = 0, max_bytes: int = config.MAX_EVENT_BYTES) -> HookEvent:
    if body_size > max_bytes:
        raise EventValidationError(f"Event body exceeds {max_bytes} bytes", status_code=413)
    if not isinstance(data, dict):
        raise EventValidationError("Event must be a JSON object")
    missing = [field for field in REQUIRED_FIELDS if data.get(field) in (None, "")]
    if missing:
        raise EventValidationError(f"Missing required fields: {', '.join(missing)}")
    if data["hook_event_type"] not in ALLOWED_EVENT_TYPES:
        raise EventValidationError(f"Unknown hook_event_type: {data['hook_event_type']}")
    if not isinstance(data["payload"], dict):
        raise EventValidationError("payload must be a JSON object")
    fields = {k: v for k, v in data.items() if k in HookEvent.model_fields and k != "id"}
    if fields.get("timestamp") is None:
        fields.pop("timestamp", None)
    try:
        return HookEvent(**fields)
    except ValidationError as exc:
        raise EventValidationError(f"Invalid event: {exc.errors()[0].get('msg', 'validation error')}") from exc


class IngestionService:
    """Storing the raw event is the only step whose failure reaches the caller.

    Events are stored and enriched one at a time, in arrival order, so derived
    counters never see interleaved read-modify-write cycles.
    """

    def __init__(
        self,
        engine: SessionLifecycleEngine,
        broadcaster: Optional[Broadcaster] = None,
        webhooks: Optional[WebhookDispatcher] = None,
    ):
        self.engine = engine
        self.events = SqliteEventRepository(engine.db)
        self.broadcaster = broadcaster
        self.webhooks = webhooks
        self._lock = asyncio.Lock()

    async def ingest(self, event: HookEvent) -> HookEvent:
        started = time.perf_counter()
        project = event.source_app
        with start_span("agentpulse.ingest", {"event_type": event.hook_event_type, "project": project}):
            changes: dict = {}
            result = "ok"
            async with self._lock:
                event.id = await self.events.insert(event)
                try:
                    changes = await self.engine.enrich(event)
                except Exception:
                    result = "enrichment_failed"
                    logger.exception(
                        "Enrichment failed for %s event %s from %s",
                        event.hook_event_type, event.id, event.agent_key,
                    )
                    record_enrichment_failure("lifecycle", project)

            await self._broadcast(event, changes)

            if self.webhooks is not None:
                try:
                    await self.webhooks.dispatch_event(event)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Webhook dispatch failed for event %s: %s", event.id, exc)

        record_ingestion(event.hook_event_type, result, (time.perf_counter() - started) * 1000, project=project)
        return event

    async def _broadcast(self, event: HookEvent, changes: dict) -> None:
        if self.broadcaster is None or not len(self.broadcaster):
            return
        try:
            await self.broadcaster.send("event", event.model_dump())
            await self.broadcaster.send("projects", await self.engine.list_projects())
            await self.broadcaster.send("sessions", await self.engine.active_sessions())
            if changes.get("topology_changed"):
                await self.broadcaster.send("topology", await self.engine.topology.tree())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Broadcast failed for event %s: %s", event.id, exc)
