"""Typed decoding of agent stream-json output lines.

Every non-empty output line becomes exactly one event.  JSON objects are
validated against the model registered for their ``type``; anything that does
not fit (unknown type, failed validation, non-JSON noise) becomes an
``UnknownEvent`` instead of being dropped silently.
"""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

ERROR_LINE_PREFIXES: tuple[str, ...] = (
    "error:",
    "fatal:",
    "[error]",
    "tool call failed",
    "mcp error",
)
WARNING_LINE_PREFIXES: tuple[str, ...] = (
    "warning:",
    "warn:",
    "[warn]",
)


class _AgentEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: ClassVar[str] = "unknown"

    type: str
    session_id: str | None = None


class InitEvent(_AgentEvent):
    """Session start announcement (``system``/``init``)."""

    kind: ClassVar[str] = "init"

    subtype: str | None = None
    model: str | None = None
    cwd: str | None = None


class AssistantEvent(_AgentEvent):
    """One assistant message chunk."""

    kind: ClassVar[str] = "assistant"

    message: dict[str, Any] = Field(default_factory=dict)

    def text(self) -> str:
        content = self.message.get("content")
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            return ""
        chunks: list[str] = []
        for item in content:
            if not isinstance(item, dict) or item.get("type") != "text":
                continue
            text = item.get("text")
            if isinstance(text, str):
                chunks.append(text)
        return "".join(chunks)


class ToolCallEvent(_AgentEvent):
    """Tool invocation progress (``started``/``completed``)."""

    kind: ClassVar[str] = "tool_call"

    subtype: str | None = None
    call_id: str | None = None
    tool_call: dict[str, Any] = Field(default_factory=dict)


class ResultEvent(_AgentEvent):
    """Completion marker carrying the final answer."""

    kind: ClassVar[str] = "result"

    subtype: str | None = None
    is_error: bool = False
    duration_ms: float | None = None
    duration_api_ms: float | None = None
    result: Any = None
    request_id: str | None = None
    usage: dict[str, Any] | None = None

    @property
    def marks_error(self) -> bool:
        return self.is_error or (self.subtype or "").lower().startswith("error")


class ErrorTextEvent(BaseModel):
    """Plain-text error line printed by the agent or one of its tools."""

    kind: ClassVar[str] = "error_text"

    text: str


class WarningTextEvent(BaseModel):
    """Plain-text warning line."""

    kind: ClassVar[str] = "warning_text"

    text: str


class UnknownEvent(BaseModel):
    """Anything that is not one of the known event shapes."""

    kind: ClassVar[str] = "unknown"

    type_name: str | None = None
    raw: dict[str, Any] | None = None
    text: str = ""
    session_id: str | None = None
    malformed: bool = False


StreamEvent = (
    InitEvent
    | AssistantEvent
    | ToolCallEvent
    | ResultEvent
    | ErrorTextEvent
    | WarningTextEvent
    | UnknownEvent
)

_EVENT_MODELS: dict[str, type[_AgentEvent]] = {
    "init": InitEvent,
    "assistant": AssistantEvent,
    "tool_call": ToolCallEvent,
    "result": ResultEvent,
}


def decode_event(payload: dict[str, Any]) -> StreamEvent:
    """Decode one parsed JSON object into its event variant."""

    type_name = payload.get("type")
    raw_session_id = payload.get("session_id")
    session_id = raw_session_id if isinstance(raw_session_id, str) and raw_session_id else None

    if type_name == "system" and payload.get("subtype") in (None, "init"):
        model: type[_AgentEvent] | None = InitEvent
    else:
        model = _EVENT_MODELS.get(type_name) if isinstance(type_name, str) else None
    if model is None:
        return UnknownEvent(
            type_name=type_name if isinstance(type_name, str) else None,
            raw=payload,
            session_id=session_id,
        )

    try:
        return model.model_validate(payload)
    except ValidationError as error:
        logger.debug("Event type=%s failed validation: %s", type_name, error)
        return UnknownEvent(type_name=type_name, raw=payload, session_id=session_id)


def decode_line(line: str) -> StreamEvent | None:
    """Decode one output line; blank lines yield ``None``."""

    stripped = line.strip()
    if not stripped:
        return None

    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            return UnknownEvent(text=stripped, malformed=True)
        if isinstance(payload, dict):
            return decode_event(payload)
        return UnknownEvent(text=stripped)

    lowered = stripped.lower()
    if lowered.startswith(ERROR_LINE_PREFIXES):
        return ErrorTextEvent(text=stripped)
    if lowered.startswith(WARNING_LINE_PREFIXES):
        return WarningTextEvent(text=stripped)
    return UnknownEvent(text=stripped)
