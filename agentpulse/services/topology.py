"""Parent/child relationships between agent sessions."""
from __future__ import annotations

import logging

import aiosqlite

from agentpulse.db.repositories.topology import SqliteTopologyRepository
from agentpulse.hook_events import HookEvent

logger = logging.getLogger("agentpulse.topology")


def build_tree(rows: list[dict]) -> list[dict]:
    """Attach child ids to their parents in one pass over an id map."""
    nodes: dict[str, dict] = {}
    for row in rows:
        nodes[row["agent_id"]] = {
            "agent_id": row["agent_id"],
            "parent_id": row.get("parent_id"),
            "status": row.get("status") or "active",
            "model_name": row.get("model_name") or "",
            "project_name": row.get("project_name") or "",
            "task_context": row.get("task_context") or "",
            "started_at": row.get("started_at"),
            "last_event_at": row.get("last_event_at"),
            "children": [],
        }
    for node in nodes.values():
        parent = nodes.get(node["parent_id"]) if node["parent_id"] else None
        if parent is not None:
            parent["children"].append(node["agent_id"])
    return list(nodes.values())


class TopologyTracker:
    def __init__(self, db: aiosqlite.Connection):
        self.nodes = SqliteTopologyRepository(db)

    async def subagent_started(self, event: HookEvent, project_name: str, model_name: str, now: int) -> bool:
        child_id = event.subagent_id
        if not child_id:
            logger.warning(
                "SubagentStart from %s has no agent_id in payload; skipping", event.agent_key
            )
            return False
        # Child ids are "<source_app>:<session_id>" of the sub-agent's own session.
        source_app, _, session_id = child_id.partition(":")
        await self.nodes.upsert(
            agent_id=child_id,
            parent_id=event.agent_key,
            session_id=session_id,
            source_app=source_app,
            project_name=project_name,
            now=now,
            model_name=model_name,
        )
        return True

    async def subagent_stopped(self, event: HookEvent, now: int) -> bool:
        child_id = event.subagent_id
        if not child_id:
            return False
        return await self.nodes.set_status(child_id, "stopped", now)

    async def touch(self, event: HookEvent, now: int) -> None:
        """Refresh ``last_event_at`` if the reporting session is itself a tracked sub-agent."""
        await self.nodes.touch(event.agent_key, now)

    async def tree(self, project_name: str | None = None) -> list[dict]:
        return build_tree(await self.nodes.list_nodes(project_name))
