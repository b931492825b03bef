"""Database schema creation and versioning.

All CREATE TABLE statements for the event log and derived state.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("agentpulse.db")

SCHEMA_VERSION = 4

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Event log (append-only) ─────────────────────────────────────
CREATE TABLE IF NOT EXISTS events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    source_app      TEXT NOT NULL,
    session_id      TEXT NOT NULL,
    hook_event_type TEXT NOT NULL,
    payload         TEXT NOT NULL,
    chat            TEXT,
    summary         TEXT,
    timestamp       INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_source    ON events(source_app);
CREATE INDEX IF NOT EXISTS idx_events_session   ON events(session_id, source_app, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_type      ON events(hook_event_type, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);

-- ── 2. Projects ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    name              TEXT NOT NULL UNIQUE,
    path              TEXT DEFAULT '',
    current_branch    TEXT DEFAULT 'main',
    active_sessions   INTEGER DEFAULT 0,
    last_activity     INTEGER,
    test_status       TEXT DEFAULT 'unknown',
    test_summary      TEXT DEFAULT '',
    dev_servers       TEXT DEFAULT '[]',
    deployment_status TEXT DEFAULT '{}',
    github_status     TEXT DEFAULT '{}',
    health            TEXT DEFAULT '{}',
    created_at        INTEGER NOT NULL,
    updated_at        INTEGER NOT NULL
);

-- ── 3. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id     TEXT NOT NULL,
    source_app     TEXT NOT NULL,
    project_name   TEXT NOT NULL,
    status         TEXT NOT NULL DEFAULT 'active',
    current_branch TEXT DEFAULT '',
    started_at     INTEGER NOT NULL,
    last_event_at  INTEGER NOT NULL,
    event_count    INTEGER DEFAULT 0,
    model_name     TEXT DEFAULT '',
    cwd            TEXT DEFAULT '',
    task_context   TEXT DEFAULT '{}',
    UNIQUE(session_id, source_app)
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_name, status);
CREATE INDEX IF NOT EXISTS idx_sessions_status  ON sessions(status, last_event_at);

-- ── 4. Dev logs ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS dev_logs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id       TEXT NOT NULL,
    source_app       TEXT NOT NULL,
    project_name     TEXT NOT NULL,
    branch           TEXT DEFAULT '',
    summary          TEXT DEFAULT '',
    files_changed    TEXT DEFAULT '[]',
    commits          TEXT DEFAULT '[]',
    started_at       INTEGER NOT NULL,
    ended_at         INTEGER NOT NULL,
    duration_minutes INTEGER DEFAULT 0,
    event_count      INTEGER DEFAULT 0,
    tool_breakdown   TEXT DEFAULT '{}',
    UNIQUE(session_id, source_app)
);

CREATE INDEX IF NOT EXISTS idx_devlogs_project ON dev_logs(project_name, ended_at DESC);
CREATE INDEX IF NOT EXISTS idx_devlogs_ended   ON dev_logs(ended_at);

-- ── 5. Agent topology ──────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_topology (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id      TEXT NOT NULL UNIQUE,
    parent_id     TEXT,
    session_id    TEXT NOT NULL,
    source_app    TEXT NOT NULL,
    project_name  TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'active',
    model_name    TEXT DEFAULT '',
    started_at    INTEGER NOT NULL,
    last_event_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_topology_project ON agent_topology(project_name);
CREATE INDEX IF NOT EXISTS idx_topology_parent  ON agent_topology(parent_id);

-- ── 6. Cost estimates ──────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS cost_estimates (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id           TEXT NOT NULL,
    source_app           TEXT NOT NULL,
    project_name         TEXT NOT NULL,
    model_name           TEXT DEFAULT '',
    input_tokens         INTEGER DEFAULT 0,
    output_tokens        INTEGER DEFAULT 0,
    estimated_cost_usd   REAL DEFAULT 0,
    event_count          INTEGER DEFAULT 0,
    created_at           INTEGER NOT NULL,
    updated_at           INTEGER NOT NULL,
    UNIQUE(session_id, source_app)
);

CREATE INDEX IF NOT EXISTS idx_costs_project ON cost_estimates(project_name, updated_at);

-- ── 7. File access log + conflict dismissals ───────────────────────
CREATE TABLE IF NOT EXISTS file_access_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    file_path    TEXT NOT NULL,
    project_name TEXT NOT NULL,
    session_id   TEXT NOT NULL,
    source_app   TEXT NOT NULL,
    access_type  TEXT NOT NULL,
    timestamp    INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file_access_path ON file_access_log(file_path, timestamp);
CREATE INDEX IF NOT EXISTS idx_file_access_time ON file_access_log(timestamp);

CREATE TABLE IF NOT EXISTS dismissed_conflicts (
    id           TEXT PRIMARY KEY,
    dismissed_at INTEGER NOT NULL
);

-- ── 8. Webhooks ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS webhooks (
    id                TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    url               TEXT NOT NULL,
    secret            TEXT DEFAULT '',
    event_types       TEXT DEFAULT '[]',
    project_filter    TEXT DEFAULT '',
    active            INTEGER DEFAULT 1,
    created_at        INTEGER NOT NULL,
    updated_at        INTEGER NOT NULL,
    last_triggered_at INTEGER,
    last_status       INTEGER,
    last_error        TEXT DEFAULT '',
    trigger_count     INTEGER DEFAULT 0,
    failure_count     INTEGER DEFAULT 0
);

-- ── 9. Settings ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

_SEED_SETTINGS = """
INSERT OR IGNORE INTO settings (key, value, updated_at) VALUES
    ('retention.events.days',      '30',         0),
    ('retention.devlogs.days',     '90',         0),
    ('retention.sessions.days',    '30',         0),
    ('retention.archive.enabled',  'false',      0),
    ('retention.archive.directory', './archives', 0);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and seed data. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Columns added after the first release.
    await _ensure_column(db, "events", "model_name", "TEXT DEFAULT ''")
    await _ensure_column(db, "sessions", "topic", "TEXT DEFAULT ''")
    await _ensure_column(db, "sessions", "compaction_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sessions", "last_compaction_at", "INTEGER")
    await _ensure_column(db, "sessions", "compaction_history", "TEXT DEFAULT '[]'")
    await _ensure_column(db, "sessions", "ended_at", "INTEGER")

    await db.executescript(_SEED_SETTINGS)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
