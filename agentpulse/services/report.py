"""Self-contained HTML activity report.

Every interpolated value goes through ``html.escape``; the document carries
its own inline styles and has no external references.
"""
from __future__ import annotations

from html import escape

import aiosqlite

from agentpulse.date_utils import ms_to_iso, now_ms
from agentpulse.db.repositories.dev_logs import SqliteDevLogRepository
from agentpulse.db.repositories.projects import SqliteProjectRepository
from agentpulse.db.repositories.sessions import SqliteSessionRepository
from agentpulse.services.costs import CostEstimator

_STYLE = """
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; margin: 2rem; color: #1f2937; background: #f9fafb; }
h1 { font-size: 1.6rem; margin-bottom: 0.25rem; }
h2 { font-size: 1.2rem; margin-top: 2rem; border-bottom: 1px solid #e5e7eb; padding-bottom: 0.25rem; }
.meta { color: #6b7280; font-size: 0.85rem; }
.stats { display: flex; gap: 1rem; margin: 1rem 0; }
.stat { background: #fff; border: 1px solid #e5e7eb; border-radius: 6px; padding: 0.75rem 1rem; }
.stat b { display: block; font-size: 1.3rem; }
table { border-collapse: collapse; width: 100%; background: #fff; }
th, td { text-align: left; padding: 0.4rem 0.6rem; border-bottom: 1px solid #f3f4f6; font-size: 0.85rem; }
.log { background: #fff; border: 1px solid #e5e7eb; border-radius: 6px; padding: 0.75rem 1rem; margin: 0.75rem 0; }
code { background: #f3f4f6; padding: 0 0.25rem; border-radius: 3px; margin-right: 0.25rem; }
"""


def format_duration(minutes: float) -> str:
    if minutes < 60:
        return f"{round(minutes)}m"
    hours = int(minutes // 60)
    mins = round(minutes % 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def _e(value: object) -> str:
    return escape("" if value is None else str(value), quote=True)


def _project_rows(projects: list[dict]) -> str:
    rows = []
    for project in projects:
        health = project.get("health") or {}
        rows.append(
            "<tr>"
            f"<td>{_e(project.get('name'))}</td>"
            f"<td>{_e(project.get('current_branch'))}</td>"
            f"<td>{_e(project.get('active_sessions'))}</td>"
            f"<td>{_e(project.get('test_status'))}</td>"
            f"<td>{_e(health.get('score', ''))}</td>"
            f"<td>{_e(ms_to_iso(project.get('last_activity')))}</td>"
            "</tr>"
        )
    return "".join(rows)


def _session_rows(sessions: list[dict]) -> str:
    return "".join(
        "<tr>"
        f"<td>{_e(s.get('project_name'))}</td>"
        f"<td>{_e((s.get('session_id') or '')[:8])}</td>"
        f"<td>{_e(s.get('status'))}</td>"
        f"<td>{_e(s.get('current_branch'))}</td>"
        f"<td>{_e(s.get('topic') or '')}</td>"
        f"<td>{_e(s.get('event_count'))}</td>"
        "</tr>"
        for s in sessions
    )


def _cost_rows(costs: list[dict]) -> str:
    return "".join(
        "<tr>"
        f"<td>{_e(c['project_name'])}</td>"
        f"<td>{_e(c['session_count'])}</td>"
        f"<td>{_e(c['total_input_tokens'])}</td>"
        f"<td>{_e(c['total_output_tokens'])}</td>"
        f"<td>${c['total_cost_usd']:.4f}</td>"
        "</tr>"
        for c in costs
    )


def _dev_log_html(log: dict) -> str:
    files = log.get("files_changed") or []
    commits = log.get("commits") or []
    tools = log.get("tool_breakdown") or {}
    parts = [
        '<div class="log">',
        f"<h3>{_e(log.get('project_name'))} &middot; {_e(log.get('branch') or 'unknown branch')}</h3>",
        f"<p class=\"meta\">{_e(ms_to_iso(log.get('ended_at')))} &middot; "
        f"{_e(format_duration(log.get('duration_minutes') or 0))} &middot; {_e(log.get('event_count'))} events</p>",
        f"<p>{_e(log.get('summary'))}</p>",
    ]
    if files:
        parts.append(f"<h4>Files Changed ({len(files)})</h4><div>")
        parts.extend(f"<code>{_e(path)}</code>" for path in files)
        parts.append("</div>")
    if commits:
        parts.append("<h4>Commits</h4><ul>")
        parts.extend(f"<li>{_e(commit)}</li>" for commit in commits)
        parts.append("</ul>")
    if tools:
        usage = ", ".join(f"{_e(tool)}: {_e(count)}" for tool, count in sorted(tools.items()))
        parts.append(f"<h4>Tool Usage</h4><p>{usage}</p>")
    parts.append("</div>")
    return "".join(parts)


def render_report(
    projects: list[dict],
    sessions: list[dict],
    dev_logs: list[dict],
    costs: list[dict],
    *,
    project_filter: str | None = None,
    generated_at: int | None = None,
) -> str:
    title = f"AgentPulse Report - {project_filter}" if project_filter else "AgentPulse Report - All Projects"
    generated = ms_to_iso(generated_at if generated_at is not None else now_ms())
    total_minutes = sum(int(log.get("duration_minutes") or 0) for log in dev_logs)
    total_cost = sum(c["total_cost_usd"] for c in costs)
    logs_html = "".join(_dev_log_html(log) for log in dev_logs) or '<p class="meta">No dev logs yet.</p>'
    return (
        "<!DOCTYPE html><html lang=\"en\"><head><meta charset=\"utf-8\">"
        f"<title>{_e(title)}</title><style>{_STYLE}</style></head><body>"
        f"<h1>{_e(title)}</h1><p class=\"meta\">Generated {_e(generated)}</p>"
        "<div class=\"stats\">"
        f"<div class=\"stat\"><b>{len(projects)}</b>projects</div>"
        f"<div class=\"stat\"><b>{len(sessions)}</b>sessions</div>"
        f"<div class=\"stat\"><b>{_e(format_duration(total_minutes))}</b>logged</div>"
        f"<div class=\"stat\"><b>${total_cost:.2f}</b>estimated cost</div>"
        "</div>"
        "<h2>Projects</h2><table><tr><th>Name</th><th>Branch</th><th>Sessions</th>"
        "<th>Tests</th><th>Health</th><th>Last activity</th></tr>"
        f"{_project_rows(projects)}</table>"
        "<h2>Sessions</h2><table><tr><th>Project</th><th>Session</th><th>Status</th>"
        "<th>Branch</th><th>Topic</th><th>Events</th></tr>"
        f"{_session_rows(sessions)}</table>"
        "<h2>Costs</h2><table><tr><th>Project</th><th>Sessions</th><th>Input tokens</th>"
        "<th>Output tokens</th><th>Cost</th></tr>"
        f"{_cost_rows(costs)}</table>"
        "<h2>Dev Logs</h2>"
        f"{logs_html}"
        "</body></html>"
    )


class ReportService:
    def __init__(self, db: aiosqlite.Connection):
        self.projects = SqliteProjectRepository(db)
        self.sessions = SqliteSessionRepository(db)
        self.dev_logs = SqliteDevLogRepository(db)
        self.costs = CostEstimator(db)

    async def html_report(self, project: str | None = None, limit: int = 100) -> str:
        projects = await self.projects.list_all()
        if project:
            projects = [p for p in projects if p["name"] == project]
            sessions = await self.sessions.list_for_project(project, limit)
        else:
            sessions = await self.sessions.list_all(limit)
        dev_logs = await self.dev_logs.list_recent(limit, project)
        costs = await self.costs.by_project()
        if project:
            costs = [c for c in costs if c["project_name"] == project]
        return render_report(projects, sessions, dev_logs, costs, project_filter=project)
