"""Inbound hook event model and typed payload variants.

Hook payloads are free-form JSON whose shape depends on ``hook_event_type``.
The boundary parses them into a small family of pydantic models so the rest of
the engine reads fields through narrow accessors instead of poking at dicts.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from agentpulse.date_utils import now_ms

SESSION_START = "SessionStart"
SESSION_END = "SessionEnd"
USER_PROMPT_SUBMIT = "UserPromptSubmit"
PRE_TOOL_USE = "PreToolUse"
POST_TOOL_USE = "PostToolUse"
POST_TOOL_USE_FAILURE = "PostToolUseFailure"
PERMISSION_REQUEST = "PermissionRequest"
NOTIFICATION = "Notification"
STOP = "Stop"
SUBAGENT_START = "SubagentStart"
SUBAGENT_STOP = "SubagentStop"
PRE_COMPACT = "PreCompact"
TEST_EVENT = "TestEvent"

HOOK_EVENT_TYPES = frozenset({
    SESSION_START,
    SESSION_END,
    USER_PROMPT_SUBMIT,
    PRE_TOOL_USE,
    POST_TOOL_USE,
    POST_TOOL_USE_FAILURE,
    PERMISSION_REQUEST,
    NOTIFICATION,
    STOP,
    SUBAGENT_START,
    SUBAGENT_STOP,
    PRE_COMPACT,
})
ALLOWED_EVENT_TYPES = HOOK_EVENT_TYPES | {TEST_EVENT}

REQUIRED_FIELDS = ("source_app", "session_id", "hook_event_type", "payload")

WRITE_TOOLS = frozenset({"Write", "Edit"})
FILE_TOOLS = frozenset({"Write", "Edit", "Read"})


class BasePayload(BaseModel):
    """Fields every hook may carry."""

    model_config = ConfigDict(extra="allow")

    cwd: str = ""
    branch: str = ""
    git_branch: str = ""


class ToolPayload(BasePayload):
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_result: Any = None
    tool_response: Any = None
    output: Any = None
    error: Any = None


class PromptPayload(BasePayload):
    prompt: str = ""


class SubagentPayload(BasePayload):
    agent_id: str = ""
    agent_type: str = ""


class NotificationPayload(BasePayload):
    message: str = ""


_PAYLOAD_TYPES: dict[str, type[BasePayload]] = {
    PRE_TOOL_USE: ToolPayload,
    POST_TOOL_USE: ToolPayload,
    POST_TOOL_USE_FAILURE: ToolPayload,
    PERMISSION_REQUEST: ToolPayload,
    USER_PROMPT_SUBMIT: PromptPayload,
    SUBAGENT_START: SubagentPayload,
    SUBAGENT_STOP: SubagentPayload,
    NOTIFICATION: NotificationPayload,
}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, separators=(",", ":"))


def parse_payload(event_type: str, payload: dict[str, Any] | None) -> BasePayload:
    """Return the typed payload variant for an event type.

    Malformed known fields (e.g. a non-dict ``tool_input``) degrade to the
    base variant rather than failing ingestion.
    """
    model = _PAYLOAD_TYPES.get(event_type, BasePayload)
    data = payload if isinstance(payload, dict) else {}
    try:
        return model.model_validate(data)
    except ValidationError:
        cleaned = {key: data[key] for key in ("cwd", "branch", "git_branch") if isinstance(data.get(key), str)}
        return model.model_validate(cleaned)


class HookEvent(BaseModel):
    """One telemetry record emitted by an agent session."""

    source_app: str
    session_id: str
    hook_event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    chat: Optional[list[Any]] = None
    summary: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    model_name: Optional[str] = None
    id: Optional[int] = None

    _typed: Optional[BasePayload] = PrivateAttr(default=None)

    def typed_payload(self) -> BasePayload:
        if self._typed is None:
            self._typed = parse_payload(self.hook_event_type, self.payload)
        return self._typed

    @property
    def agent_key(self) -> str:
        return f"{self.source_app}:{self.session_id}"

    @property
    def cwd(self) -> str:
        return self.typed_payload().cwd

    @property
    def branch_hint(self) -> str:
        data = self.typed_payload()
        return data.branch or data.git_branch

    @property
    def tool_name(self) -> str:
        data = self.typed_payload()
        return data.tool_name if isinstance(data, ToolPayload) else ""

    @property
    def tool_input(self) -> dict[str, Any]:
        data = self.typed_payload()
        return data.tool_input if isinstance(data, ToolPayload) else {}

    @property
    def file_path(self) -> str:
        tool_input = self.tool_input
        value = tool_input.get("file_path") or tool_input.get("path") or ""
        return value if isinstance(value, str) else ""

    @property
    def command(self) -> str:
        value = self.tool_input.get("command") or ""
        return value if isinstance(value, str) else ""

    @property
    def result_text(self) -> str:
        """Tool output text, preferring ``tool_result.stdout``."""
        data = self.typed_payload()
        if not isinstance(data, ToolPayload):
            return ""
        result = data.tool_result if data.tool_result is not None else data.tool_response
        if isinstance(result, dict):
            stdout = result.get("stdout")
            if stdout:
                return _as_text(stdout)
        if result is not None:
            return _as_text(result)
        return _as_text(data.output)

    @property
    def prompt(self) -> str:
        data = self.typed_payload()
        return data.prompt if isinstance(data, PromptPayload) else ""

    @property
    def subagent_id(self) -> str:
        data = self.typed_payload()
        return data.agent_id if isinstance(data, SubagentPayload) else ""


def event_from_row(row: Any) -> HookEvent:
    """Build a HookEvent from an ``events`` table row."""
    payload = _safe_json(row["payload"], {})
    chat = _safe_json(row["chat"], None) if row["chat"] else None
    return HookEvent(
        id=row["id"],
        source_app=row["source_app"],
        session_id=row["session_id"],
        hook_event_type=row["hook_event_type"],
        payload=payload if isinstance(payload, dict) else {},
        chat=chat if isinstance(chat, list) else None,
        summary=row["summary"],
        timestamp=row["timestamp"],
        model_name=row["model_name"] or None,
    )


def _safe_json(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default
