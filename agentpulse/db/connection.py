"""Database connection factory.

Provides a singleton async connection to SQLite with WAL mode. The engine
assumes a single writer process; every repository shares this connection.
"""
from __future__ import annotations

import logging

import aiosqlite

from agentpulse import config

logger = logging.getLogger("agentpulse.db")

_connection: aiosqlite.Connection | None = None


async def open_connection(path: str) -> aiosqlite.Connection:
    """Open and configure a new SQLite connection."""
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    # WAL keeps readers from blocking the ingest writer
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    _connection = await open_connection(str(config.DB_PATH))
    logger.info(f"Database connection established: {config.DB_PATH}")
    return _connection


def is_connected() -> bool:
    return _connection is not None


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
