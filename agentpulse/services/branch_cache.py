"""Bounded TTL cache in front of ``git rev-parse`` branch detection."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("agentpulse.git")

GIT_TIMEOUT_SECONDS = 2.0


async def detect_git_branch(cwd: str, timeout: float = GIT_TIMEOUT_SECONDS) -> str:
    """Return the checked-out branch in ``cwd`` or an empty string."""
    if not cwd or not Path(cwd).is_dir():
        return ""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "rev-parse", "--abbrev-ref", "HEAD",
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.debug("Branch detection failed for %s: %s", cwd, exc)
        return ""
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("git rev-parse timed out after %ss in %s", timeout, cwd)
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
        return ""
    if proc.returncode != 0:
        return ""
    return stdout.decode("utf-8", errors="replace").strip()


class BranchCache:
    """Caches branch lookups per directory.

    Entries expire after ``ttl_seconds``; when full, the oldest insertion is
    evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float = 15,
        max_entries: int = 50,
        detector: Optional[Callable[[str], Awaitable[str]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._detector = detector or detect_git_branch
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, cwd: str) -> str | None:
        entry = self._entries.get(cwd)
        if entry is None:
            return None
        branch, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[cwd]
            return None
        return branch

    def put(self, cwd: str, branch: str) -> None:
        if cwd in self._entries:
            del self._entries[cwd]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[cwd] = (branch, self._clock())

    async def get(self, cwd: str) -> str:
        if not cwd:
            return ""
        cached = self.peek(cwd)
        if cached is not None:
            return cached
        branch = await self._detector(cwd)
        self.put(cwd, branch)
        return branch

    def invalidate(self, cwd: str | None = None) -> None:
        if cwd is None:
            self._entries.clear()
        else:
            self._entries.pop(cwd, None)
