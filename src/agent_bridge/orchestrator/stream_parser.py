"""Extract the single result record from raw agent stream-json output.

``parse_agent_output`` never raises.  Strategies run in a fixed order and the
first one that yields a result event wins:

1. sanitize (ANSI escapes and control characters removed),
2. line scan over decoded events,
3. re-segmentation of a stream that arrived as one concatenated line,
4. brace matching around the ``"type":"result"`` marker,
5. regex last resort (research operations only, flagged ``partial``).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.orchestrator.events import (
    ERROR_LINE_PREFIXES,
    WARNING_LINE_PREFIXES,
    AssistantEvent,
    ErrorTextEvent,
    ResultEvent,
    WarningTextEvent,
    decode_event,
    decode_line,
)
from agent_bridge.orchestrator.models import Diagnostics, ResultRecord
from agent_bridge.orchestrator.usage import extract_usage

logger = logging.getLogger(__name__)

RESULT_MARKER_RE = re.compile(r'"type"\s*:\s*"result"')

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07]*\x07")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_OBJECT_BOUNDARY_RE = re.compile(r"}[ \t]*{")
_LAST_RESORT_RESULT_RE = re.compile(r'"result"\s*:\s*"((?:[^"\\]|\\.)*)"')
_LAST_RESORT_SESSION_RE = re.compile(r'"session_id"\s*:\s*"([^"\\]+)"')
_JSON_LOOKING_PREFIXES = ("[", "{", '"[', '"{')
_MAX_DECODE_LAYERS = 4
_PREVIEW_CHARS = 500


@dataclass(slots=True)
class ParseFailure:
    """No result event could be recovered from the output."""

    reason: str
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    saw_marker: bool = False
    session_id: str | None = None
    preview: str = ""


ParseOutcome = ResultRecord | ParseFailure


@dataclass(slots=True)
class AssistantTranscript:
    text: str
    chunks: int
    session_id: str | None


@dataclass(slots=True)
class _ScanState:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    session_id: str | None = None
    result: ResultEvent | None = None

    def diagnostics(self) -> Diagnostics:
        return Diagnostics(errors=tuple(self.errors), warnings=tuple(self.warnings))


def has_result_marker(text: str) -> bool:
    """Whether ``text`` contains the whitespace-tolerant completion marker."""

    return RESULT_MARKER_RE.search(text) is not None


def sanitize_output(raw: str | bytes) -> str:
    """Strip terminal escapes and control characters; newlines and tabs stay."""

    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    text = _ANSI_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL_RE.sub("", text)


def parse_agent_output(raw: str | bytes, *, research: bool = False) -> ParseOutcome:
    """Parse one invocation's complete (or partial) stdout."""

    text = sanitize_output(raw)
    if not text.strip():
        return ParseFailure(reason="empty output")

    state = _scan_lines(text.split("\n"))
    strategy = "line_scan"

    if state.result is None and _looks_concatenated(text):
        state = _scan_lines(_resegment(text).split("\n"))
        strategy = "resegmented"

    if state.result is None:
        matched = _brace_match_result(text)
        if matched is not None:
            state.result = matched
            if matched.session_id:
                state.session_id = matched.session_id
            strategy = "brace_match"

    if state.result is not None:
        return _build_record(state.result, state, strategy=strategy)

    if research:
        partial = _last_resort(text, state)
        if partial is not None:
            logger.info("Recovered partial research result via regex last resort")
            return partial

    saw_marker = has_result_marker(text)
    logger.debug("No result event found (marker_seen=%s, chars=%d)", saw_marker, len(text))
    return ParseFailure(
        reason="no result event in output" if not saw_marker else "unparseable result event",
        diagnostics=state.diagnostics(),
        saw_marker=saw_marker,
        session_id=state.session_id,
        preview=_preview(text),
    )


def extract_assistant_text(raw: str | bytes) -> AssistantTranscript:
    """Concatenate assistant text chunks; non-text content is ignored."""

    text = sanitize_output(raw)
    chunks: list[str] = []
    session_id: str | None = None
    for line in text.split("\n"):
        event = decode_line(line)
        if event is None:
            continue
        event_session = getattr(event, "session_id", None)
        if event_session and session_id is None:
            session_id = event_session
        if isinstance(event, AssistantEvent):
            chunk = event.text()
            if chunk:
                chunks.append(chunk)
    return AssistantTranscript(text="".join(chunks), chunks=len(chunks), session_id=session_id)


def decode_result_value(value: Any) -> Any:
    """Undo double JSON encoding of a result string when it looks encoded.

    Only containers are accepted as a decoded value; anything else keeps the
    original string.
    """

    if not isinstance(value, str):
        return value
    candidate = value.strip()
    if not candidate.startswith(_JSON_LOOKING_PREFIXES):
        return value

    decoded = _decode_layers(candidate)
    if decoded is not None:
        return decoded

    if len(candidate) >= 2 and candidate[0] == candidate[-1] == '"':
        decoded = _decode_layers(candidate[1:-1])
        if decoded is not None:
            return decoded
    return value


def _decode_layers(candidate: str) -> list[Any] | dict[str, Any] | None:
    current: Any = candidate
    for _ in range(_MAX_DECODE_LAYERS):
        try:
            current = json.loads(current)
        except (json.JSONDecodeError, TypeError):
            return None
        if isinstance(current, list | dict):
            return current
        if not isinstance(current, str) or not current.strip().startswith(_JSON_LOOKING_PREFIXES):
            return None
    return None


def _scan_lines(lines: list[str]) -> _ScanState:
    state = _ScanState()
    for line in lines:
        event = decode_line(line)
        if event is None:
            continue
        if isinstance(event, ErrorTextEvent):
            state.errors.append(event.text)
            continue
        if isinstance(event, WarningTextEvent):
            state.warnings.append(event.text)
            continue
        event_session = getattr(event, "session_id", None)
        if event_session and state.session_id is None:
            state.session_id = event_session
        if isinstance(event, ResultEvent):
            state.result = event
            if event.session_id:
                state.session_id = event.session_id
            break
    return state


def _looks_concatenated(text: str) -> bool:
    if _OBJECT_BOUNDARY_RE.search(text):
        return True
    lowered = text.lower()
    prefixes = ERROR_LINE_PREFIXES + WARNING_LINE_PREFIXES
    return any(lowered.find(prefix, 1) > 0 for prefix in prefixes)


def _resegment(text: str) -> str:
    """Split at top-level object boundaries only.

    After a closing ``}`` at depth zero a new line starts when the next
    non-blank text is another object or a diagnostic prefix; a top-level
    ``{`` that follows plain text also starts a new line.  Braces and
    prefixes inside JSON strings never split.
    """

    prefixes = ERROR_LINE_PREFIXES + WARNING_LINE_PREFIXES
    pieces: list[str] = []
    segment_start = 0
    depth = 0
    in_string = False
    escape_next = False
    for index, char in enumerate(text):
        if char == "\n":
            # Encoded JSON never spans lines; a truncated object ends here.
            depth = 0
            in_string = False
            escape_next = False
            continue
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue
        if depth > 0 and char == '"':
            in_string = True
        elif char == "{":
            if depth == 0 and text[segment_start:index].strip(" \t"):
                pieces.append(text[segment_start:index])
                segment_start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and _starts_new_segment(text, index + 1, prefixes):
                pieces.append(text[segment_start : index + 1])
                segment_start = index + 1
    pieces.append(text[segment_start:])
    return "\n".join(pieces)


def _starts_new_segment(text: str, position: int, prefixes: tuple[str, ...]) -> bool:
    while position < len(text) and text[position] in " \t":
        position += 1
    if position >= len(text) or text[position] == "\n":
        return False
    if text[position] == "{":
        return True
    longest = max(len(prefix) for prefix in prefixes)
    return text[position : position + longest].lower().startswith(prefixes)


def _brace_match_result(text: str) -> ResultEvent | None:
    for marker in RESULT_MARKER_RE.finditer(text):
        start = text.rfind("{", 0, marker.start())
        while start >= 0:
            end = _matching_brace(text, start)
            if end is not None and end >= marker.end():
                event = _decode_object(text[start : end + 1])
                if event is not None:
                    return event
            start = text.rfind("{", 0, start)
    return None


def _matching_brace(text: str, start: int) -> int | None:
    """Index of the ``}`` closing the object opened at ``start``."""

    depth = 0
    in_string = False
    escape_next = False
    for index in range(start, len(text)):
        char = text[index]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def _decode_object(candidate: str) -> ResultEvent | None:
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    event = decode_event(payload)
    return event if isinstance(event, ResultEvent) else None


def _last_resort(text: str, state: _ScanState) -> ResultRecord | None:
    markers = list(RESULT_MARKER_RE.finditer(text))
    if not markers:
        return None
    # Search only the trailing result object, not earlier events.
    tail = text[max(text.rfind("{", 0, markers[-1].start()), 0) :]
    result_match = _LAST_RESORT_RESULT_RE.search(tail)
    session_match = _LAST_RESORT_SESSION_RE.search(tail)
    session_id = session_match.group(1) if session_match is not None else state.session_id
    if result_match is None or session_id is None:
        return None
    try:
        result = json.loads(f'"{result_match.group(1)}"')
    except json.JSONDecodeError:
        result = result_match.group(1)
    diagnostics = state.diagnostics()
    return ResultRecord(
        result=decode_result_value(result),
        is_error=diagnostics.has_errors,
        usage=extract_usage(payload={}, result_text=result),
        session_id=session_id,
        diagnostics=diagnostics,
        strategy="last_resort",
        partial=True,
    )


def _build_record(event: ResultEvent, state: _ScanState, *, strategy: str) -> ResultRecord:
    diagnostics = state.diagnostics()
    result = decode_result_value(event.result)
    raw_text = event.result if isinstance(event.result, str) else ""
    payload = event.model_dump(include={"usage", "duration_api_ms"})
    extra = event.model_extra or {}
    payload.update({key: value for key, value in extra.items() if key.endswith("tokens")})
    duration = int(event.duration_ms) if event.duration_ms is not None else None
    return ResultRecord(
        result=result,
        is_error=event.marks_error or diagnostics.has_errors,
        usage=extract_usage(payload=payload, result_text=raw_text),
        session_id=event.session_id or state.session_id,
        request_id=event.request_id,
        subtype=event.subtype,
        duration_ms=duration,
        diagnostics=diagnostics,
        strategy=strategy,
    )


def _preview(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= _PREVIEW_CHARS:
        return stripped
    return stripped[-_PREVIEW_CHARS:]
