"""Periodic liveness check for detected dev servers."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

import aiosqlite
import requests

from agentpulse.db.repositories.projects import SqliteProjectRepository

logger = logging.getLogger("agentpulse.ports")

CHECK_TIMEOUT_SECONDS = 1.0
CANDIDATE_PORTS = (
    list(range(3000, 3011))
    + list(range(4000, 4011))
    + list(range(5173, 5176))
    + list(range(8000, 8003))
    + list(range(8080, 8083))
)


def check_port(port: int, timeout: float = CHECK_TIMEOUT_SECONDS) -> bool:
    """True if something answers HTTP on localhost:<port>."""
    try:
        requests.head(f"http://localhost:{port}", timeout=timeout, allow_redirects=False)
    except requests.RequestException:
        return False
    return True


async def scan_ports(
    ports: list[int] | tuple[int, ...] = tuple(CANDIDATE_PORTS),
    check: Callable[[int], bool] = check_port,
) -> set[int]:
    results = await asyncio.gather(*(asyncio.to_thread(check, port) for port in ports))
    return {port for port, alive in zip(ports, results) if alive}


class PortScanner:
    def __init__(
        self,
        db: aiosqlite.Connection,
        ports: list[int] | tuple[int, ...] = tuple(CANDIDATE_PORTS),
        check: Callable[[int], bool] = check_port,
    ):
        self.projects = SqliteProjectRepository(db)
        self.ports = ports
        self.check = check
        self.last_open_ports: set[int] = set()

    async def scan(self) -> list[str]:
        """Drop dev servers that no longer respond. Returns the changed projects."""
        projects = await self.projects.list_all()
        known = {
            s.get("port") for p in projects for s in (p.get("dev_servers") or []) if isinstance(s.get("port"), int)
        }
        self.last_open_ports = await scan_ports(sorted(set(self.ports) | known), self.check)
        changed = []
        for project in projects:
            servers = project.get("dev_servers") or []
            alive = [s for s in servers if s.get("port") in self.last_open_ports]
            if len(alive) != len(servers):
                await self.projects.set_dev_servers(project["name"], alive)
                changed.append(project["name"])
        if changed:
            logger.info("Dev server list updated for %s", ", ".join(changed))
        return changed
