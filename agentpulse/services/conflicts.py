"""Cross-project file conflict detection.

Every file read or write is logged with its project. Within a sliding window,
a file touched by two or more distinct projects is reported as a conflict.
"""
from __future__ import annotations

import aiosqlite

from agentpulse.date_utils import MINUTE_MS
from agentpulse.db.repositories.file_access import SqliteFileAccessRepository

DEFAULT_WINDOW_MINUTES = 30

# Reduced to basename so the same manifest in different roots correlates.
SHARED_CONFIG_FILES = (
    "package.json",
    "tsconfig.json",
    ".env",
    ".env.local",
    "schema.prisma",
    "bun.lockb",
    "pnpm-lock.yaml",
    "yarn.lock",
    "package-lock.json",
    "pyproject.toml",
    "requirements.txt",
    "poetry.lock",
)

PACKAGE_FILES = (
    "package.json",
    "bun.lockb",
    "pnpm-lock.yaml",
    "yarn.lock",
    "package-lock.json",
    "Gemfile",
    "Gemfile.lock",
    "requirements.txt",
    "Pipfile",
    "Pipfile.lock",
    "pyproject.toml",
    "poetry.lock",
    "go.mod",
    "go.sum",
    "Cargo.toml",
    "Cargo.lock",
)


def normalize_file_path(path: str) -> str:
    normalized = (path or "").rstrip("/")
    for name in SHARED_CONFIG_FILES:
        if normalized == name or normalized.endswith(f"/{name}"):
            return name
    return normalized


def is_package_file(path: str) -> bool:
    normalized = normalize_file_path(path)
    return any(normalized == name or normalized.endswith(f"/{name}") for name in PACKAGE_FILES)


def conflict_id(file_path: str, project_names) -> str:
    return f"{file_path}:{','.join(sorted(set(project_names)))}"


def classify_severity(project_names: set[str], writer_names: set[str]) -> str:
    if len(writer_names) >= 2:
        return "high"
    if len(writer_names) == 1 and len(project_names) > 1:
        return "medium"
    return "low"


def detect_conflicts(accesses: list[dict], dismissed: set[str] | None = None) -> list[dict]:
    """Group access rows by path and report multi-project collisions.

    Each conflict lists one entry per project: the project's most recent
    access, reported as ``write`` if the project wrote the file at all.
    """
    dismissed = dismissed or set()
    by_path: dict[str, dict[str, dict]] = {}
    for access in accesses:
        projects = by_path.setdefault(access["file_path"], {})
        name = access["project_name"]
        entry = projects.get(name)
        agent_id = f"{access['source_app']}:{access['session_id'][:8]}"
        if entry is None:
            projects[name] = {
                "project_name": name,
                "agent_id": agent_id,
                "access_type": access["access_type"],
                "last_access": access["timestamp"],
                "first_access": access["timestamp"],
            }
            continue
        if access["access_type"] == "write":
            entry["access_type"] = "write"
        if access["timestamp"] >= entry["last_access"]:
            entry["last_access"] = access["timestamp"]
            entry["agent_id"] = agent_id
        entry["first_access"] = min(entry["first_access"], access["timestamp"])

    conflicts = []
    for file_path, projects in by_path.items():
        if len(projects) < 2:
            continue
        cid = conflict_id(file_path, projects.keys())
        if cid in dismissed:
            continue
        writers = {name for name, entry in projects.items() if entry["access_type"] == "write"}
        entries = sorted(projects.values(), key=lambda e: e["project_name"])
        conflicts.append({
            "id": cid,
            "file_path": file_path,
            "severity": classify_severity(set(projects), writers),
            "is_package_file": is_package_file(file_path),
            "projects": [
                {k: v for k, v in entry.items() if k != "first_access"} for entry in entries
            ],
            "detected_at": min(entry["first_access"] for entry in entries),
            "dismissed": False,
        })
    conflicts.sort(key=lambda c: ({"high": 0, "medium": 1, "low": 2}[c["severity"]], c["file_path"]))
    return conflicts


class ConflictDetector:
    """Records file access and computes active conflicts on demand."""

    def __init__(self, db: aiosqlite.Connection, retention_hours: int = 24):
        self.accesses = SqliteFileAccessRepository(db)
        self.retention_ms = retention_hours * 60 * MINUTE_MS

    async def track(
        self,
        file_path: str,
        project_name: str,
        session_id: str,
        source_app: str,
        access_type: str,
        now: int,
    ) -> None:
        if not file_path:
            return
        await self.accesses.record(
            normalize_file_path(file_path), project_name, session_id, source_app, access_type, now
        )

    async def active_conflicts(self, now: int, window_minutes: int = DEFAULT_WINDOW_MINUTES) -> list[dict]:
        rows = await self.accesses.list_since(now - window_minutes * MINUTE_MS)
        dismissed = await self.accesses.dismissed_ids(now - self.retention_ms)
        return detect_conflicts(rows, dismissed)

    async def dismiss(self, conflict_id: str, now: int) -> None:
        await self.accesses.dismiss(conflict_id, now)

    async def cleanup(self, now: int) -> tuple[int, int]:
        return await self.accesses.delete_before(now - self.retention_ms)
