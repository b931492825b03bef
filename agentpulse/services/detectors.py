"""Heuristic detectors that read Bash tool output.

Both detectors only look at ``PostToolUse`` events of the ``Bash`` tool.
"""
from __future__ import annotations

import re

from agentpulse.hook_events import POST_TOOL_USE, HookEvent

_TEST_COMMAND_PATTERN = re.compile(r"\b(test|jest|vitest|pytest|mocha|cypress)\b", re.IGNORECASE)
_JEST_PATTERN = re.compile(r"Tests:\s+(?:(\d+)\s+failed,\s+)?(\d+)\s+passed", re.IGNORECASE)
_PASSED_PATTERN = re.compile(r"(\d+)\s+(?:tests?\s+)?passed", re.IGNORECASE)
_FAILED_PATTERN = re.compile(r"(\d+)\s+(?:tests?\s+)?failed", re.IGNORECASE)

_DEV_SERVER_PATTERN = re.compile(
    r"\b(next\s+dev|vite|bun\s+(run\s+)?dev|npm\s+run\s+dev|yarn\s+dev|pnpm\s+(run\s+)?dev)\b",
    re.IGNORECASE,
)
_PORT_PATTERN = re.compile(r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0):(\d{4,5})")


def _bash_output(event: HookEvent) -> tuple[str, str] | None:
    if event.hook_event_type != POST_TOOL_USE or event.tool_name != "Bash":
        return None
    return event.command, event.result_text


def _summary(passed: int, failed: int) -> str:
    return f"{passed} passed" + (f", {failed} failed" if failed else "")


def detect_test_results(event: HookEvent) -> tuple[str, str] | None:
    """Return ``(test_status, summary)`` for a test-runner invocation, else None."""
    bash = _bash_output(event)
    if bash is None:
        return None
    command, output = bash
    if not _TEST_COMMAND_PATTERN.search(command):
        return None

    jest = _JEST_PATTERN.search(output)
    if jest:
        failed = int(jest.group(1) or 0)
        passed = int(jest.group(2) or 0)
        return ("failing" if failed else "passing"), _summary(passed, failed)

    passed_match = _PASSED_PATTERN.search(output)
    failed_match = _FAILED_PATTERN.search(output)
    if not passed_match and not failed_match:
        return None
    passed = int(passed_match.group(1)) if passed_match else 0
    failed = int(failed_match.group(1)) if failed_match else 0
    if failed:
        return "failing", _summary(passed, failed)
    if passed:
        return "passing", _summary(passed, failed)
    return None


def detect_dev_server(event: HookEvent) -> dict | None:
    """Return ``{"port", "type"}`` when a dev server start is visible in output."""
    bash = _bash_output(event)
    if bash is None:
        return None
    command, output = bash
    if not _DEV_SERVER_PATTERN.search(command):
        return None
    port_match = _PORT_PATTERN.search(output)
    if not port_match:
        return None

    lowered = command.lower()
    if "next" in lowered:
        server_type = "next"
    elif "vite" in lowered:
        server_type = "vite"
    elif "bun" in lowered:
        server_type = "bun"
    else:
        server_type = "dev"
    return {"port": int(port_match.group(1)), "type": server_type}


def merge_dev_server(servers: list[dict], server: dict) -> list[dict]:
    merged = [dict(s) for s in servers if isinstance(s, dict)]
    for existing in merged:
        if existing.get("port") == server["port"]:
            existing["type"] = server["type"]
            return merged
    merged.append(dict(server))
    return merged
