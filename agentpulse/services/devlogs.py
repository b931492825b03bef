"""Dev log synthesis: compress a finished session into a readable record."""
from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path

import yaml

from agentpulse.date_utils import MINUTE_MS, ms_to_datetime
from agentpulse.hook_events import (
    FILE_TOOLS,
    POST_TOOL_USE,
    POST_TOOL_USE_FAILURE,
    PRE_TOOL_USE,
    SESSION_END,
    STOP,
    HookEvent,
)

logger = logging.getLogger("agentpulse.devlogs")

_GIT_COMMIT_PATTERN = re.compile(r"git\s+commit")
_QUOTED_MESSAGE_PATTERN = re.compile(r"-m\s+[\"'](.+?)[\"']")
_HEREDOC_MESSAGE_PATTERN = re.compile(r"<<['\"]?EOF['\"]?\s*\n([\s\S]*?)\n\s*EOF")
_CO_AUTHOR_PREFIX = "Co-Authored"

_BRANCH_PREFIX_PATTERN = re.compile(r"^[a-zA-Z]+/")
_VERSION_PREFIX_PATTERN = re.compile(r"^[\d.]+[-_]")
_TICKET_PREFIX_PATTERN = re.compile(r"^[A-Z]+-\d+[-_]")
_SEPARATOR_PATTERN = re.compile(r"[-_]+")
_SLUG_PATTERN = re.compile(r"[^a-zA-Z0-9]+")

MAX_NOTE_FILES = 20


def extract_commit_message(command: str) -> str:
    """Pull the commit subject out of a ``git commit`` shell command."""
    if not command or not _GIT_COMMIT_PATTERN.search(command):
        return ""
    quoted = _QUOTED_MESSAGE_PATTERN.search(command)
    if quoted and "$(cat" not in quoted.group(1):
        return quoted.group(1).strip()
    heredoc = _HEREDOC_MESSAGE_PATTERN.search(command)
    if heredoc:
        for line in heredoc.group(1).strip().splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith(_CO_AUTHOR_PREFIX):
                return ""
            return line
    return ""


def clean_commits(commits: list[str]) -> list[str]:
    cleaned = []
    for commit in commits:
        if not commit or len(commit.strip()) < 3:
            continue
        if "$(cat" in commit or "<<" in commit or "EOF" in commit:
            continue
        if commit.startswith(_CO_AUTHOR_PREFIX):
            continue
        cleaned.append(commit)
    return cleaned


def humanize_branch(branch: str) -> str:
    display = _BRANCH_PREFIX_PATTERN.sub("", branch or "")
    display = _VERSION_PREFIX_PATTERN.sub("", display)
    display = _TICKET_PREFIX_PATTERN.sub("", display)
    display = _SEPARATOR_PATTERN.sub(" ", display).strip()
    return display or branch


def _basename(path: str) -> str:
    return path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1] or path


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def build_auto_summary(
    tool_breakdown: dict[str, int],
    files_changed: list[str],
    commits: list[str],
    branch: str,
) -> str:
    """Heuristic summary used when no AI summary exists.

    Commit subjects win over everything else.
    """
    cleaned = clean_commits(commits)
    if cleaned:
        return " | ".join(cleaned)

    new_files = tool_breakdown.get("Write", 0)
    edits = tool_breakdown.get("Edit", 0)
    writes = new_files + edits
    bash_ops = tool_breakdown.get("Bash", 0)
    searches = tool_breakdown.get("Glob", 0) + tool_breakdown.get("Grep", 0)
    subagents = tool_breakdown.get("Task", 0)

    parts: list[str] = []
    if files_changed:
        names = list(dict.fromkeys(_basename(f) for f in files_changed))
        if new_files and edits:
            verb = "Created and edited"
        elif new_files and len(names) <= 3:
            verb = "Created"
        else:
            verb = "Edited"
        if len(names) <= 3:
            parts.append(f"{verb} {', '.join(names)}")
        else:
            remaining = len(names) - 3
            parts.append(f"{verb} {', '.join(names[:3])} and {remaining} more file{'' if remaining == 1 else 's'}")
    elif writes == 0 and bash_ops == 0 and searches > 0:
        parts.append("Explored and reviewed the codebase")
    elif writes > 0:
        if new_files and edits:
            parts.append(f"Created {_plural(new_files, 'new file')} and edited {edits} existing")
        elif edits:
            parts.append(f"Edited {_plural(edits, 'file')}")
        else:
            parts.append(f"Created {_plural(new_files, 'new file')}")

    if subagents:
        parts.append(f"delegated {_plural(subagents, 'task')} to sub-agents")

    if not parts:
        return f"Brief review session on {humanize_branch(branch)}"
    first = parts[0][0].upper() + parts[0][1:]
    return ", ".join([first, *parts[1:]])


def synthesize_dev_log(session: dict, events: list[HookEvent], now: int) -> dict:
    """Build the dev log record for a terminated session.

    Summary precedence: commit messages, then an explicit summary carried on
    the last Stop/SessionEnd event, then file-name heuristics.
    """
    tool_breakdown: dict[str, int] = {}
    files: dict[str, None] = {}
    commits: dict[str, None] = {}
    ai_summary = ""

    for event in events:
        tool = event.tool_name
        if tool and event.hook_event_type in (POST_TOOL_USE, POST_TOOL_USE_FAILURE):
            tool_breakdown[tool] = tool_breakdown.get(tool, 0) + 1
        if tool in FILE_TOOLS and event.file_path:
            files[event.file_path] = None
        if tool == "Bash" and event.hook_event_type in (PRE_TOOL_USE, POST_TOOL_USE):
            message = extract_commit_message(event.command)
            if message:
                commits[message] = None
        if event.hook_event_type in (STOP, SESSION_END) and event.summary:
            ai_summary = event.summary

    # PreToolUse-only hook setups still get a breakdown.
    if not tool_breakdown:
        for event in events:
            if event.tool_name and event.hook_event_type == PRE_TOOL_USE:
                tool_breakdown[event.tool_name] = tool_breakdown.get(event.tool_name, 0) + 1

    branch = session.get("current_branch") or "main"
    commit_list = list(commits)
    file_list = list(files)
    cleaned = clean_commits(commit_list)
    if cleaned:
        summary = " | ".join(cleaned)
    elif ai_summary:
        summary = ai_summary
    else:
        summary = build_auto_summary(tool_breakdown, file_list, commit_list, branch)

    started_at = session.get("started_at") or now
    return {
        "session_id": session["session_id"],
        "source_app": session["source_app"],
        "project_name": session["project_name"],
        "branch": branch,
        "summary": summary,
        "files_changed": file_list,
        "commits": commit_list,
        "started_at": started_at,
        "ended_at": now,
        "duration_minutes": max(0, round((now - started_at) / MINUTE_MS)),
        "event_count": len(events),
        "tool_breakdown": tool_breakdown,
    }


def _is_under(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def render_dev_note(log: dict) -> str:
    started = ms_to_datetime(log["started_at"])
    ended = ms_to_datetime(log["ended_at"])
    title = humanize_branch(log["branch"]).title() or log["branch"]
    commits = clean_commits(log["commits"])
    names = list(dict.fromkeys(_basename(f) for f in log["files_changed"]))

    front_matter = yaml.safe_dump(
        {
            "title": title,
            "date": started.isoformat(),
            "project": log["project_name"],
            "branch": log["branch"],
            "duration": f"{log['duration_minutes']} minutes",
            "files_changed": len(names),
            "commits": len(commits),
        },
        sort_keys=False,
        allow_unicode=True,
    )
    lines = ["---", front_matter.rstrip(), "---", "", f"# {title}", ""]
    lines.append(
        f"> **{started.strftime('%A, %B %d, %Y')}** | {_clock(started)} - {_clock(ended)} "
        f"| {log['duration_minutes']} min | {log['event_count']} events"
    )
    lines.append("")
    if log["summary"]:
        lines += ["## Summary", "", log["summary"], ""]
    if commits:
        lines += ["## Commits", ""] + [f"- {c}" for c in commits] + [""]
    if names:
        lines += ["## Files Changed", ""] + [f"- `{n}`" for n in names[:MAX_NOTE_FILES]]
        if len(names) > MAX_NOTE_FILES:
            lines.append(f"- ...and {len(names) - MAX_NOTE_FILES} more")
        lines.append("")
    if log["tool_breakdown"]:
        lines += ["## Tool Usage", "", "| Tool | Count |", "|------|-------|"]
        for tool, count in sorted(log["tool_breakdown"].items(), key=lambda kv: kv[1], reverse=True):
            lines.append(f"| {tool} | {count} |")
        lines.append("")
    return "\n".join(lines)


def write_dev_note(log: dict, cwd: str, known_paths: list[str]) -> Path | None:
    """Write a markdown note under ``<cwd>/docs/dev-notes``.

    Only writes when ``cwd`` lies inside a known project path, and never
    overwrites an existing note. Failures are logged and swallowed.
    """
    if not cwd:
        return None
    resolved = Path(cwd).resolve()
    if not any(_is_under(resolved, Path(p).resolve()) for p in known_paths if p):
        logger.warning("Skipping dev note: cwd %s is not under a known project path", cwd)
        return None

    started = ms_to_datetime(log["started_at"])
    slug = _SLUG_PATTERN.sub("-", _BRANCH_PREFIX_PATTERN.sub("", log["branch"])).strip("-")[:50]
    target = resolved / "docs" / "dev-notes" / f"{started.strftime('%Y-%m-%d-%H%M')}-{slug or 'session'}.md"
    try:
        if target.exists():
            return None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_dev_note(log), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to write dev note %s: %s", target, exc)
        return None
    logger.info("Wrote dev note %s", target)
    return target
