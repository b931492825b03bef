"""WebSocket fan-out to dashboard subscribers."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

from agentpulse import config

logger = logging.getLogger("agentpulse.broadcast")


class Broadcaster:
    """Best-effort broadcast: a subscriber whose send fails or stalls is dropped."""

    def __init__(self, send_timeout: float = config.BROADCAST_SEND_TIMEOUT_SECONDS) -> None:
        self._clients: set[WebSocket] = set()
        self.send_timeout = send_timeout

    def __len__(self) -> int:
        return len(self._clients)

    def add(self, websocket: WebSocket) -> None:
        self._clients.add(websocket)
        logger.info("WebSocket client connected (%d total)", len(self._clients))

    def remove(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        logger.info("WebSocket client disconnected (%d total)", len(self._clients))

    async def send(self, message_type: str, data: Any) -> int:
        """Send ``{"type", "data"}`` to every subscriber at once. Returns how many received it."""
        message = {"type": message_type, "data": data}
        clients = list(self._clients)
        results = await asyncio.gather(*(self._deliver(ws, message) for ws in clients))
        return sum(results)

    async def _deliver(self, websocket: WebSocket, message: dict) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning("Dropping WebSocket subscriber after %ss send timeout", self.send_timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Dropping WebSocket subscriber after send failure: %s", exc)
        else:
            return True
        self._clients.discard(websocket)
        return False
