"""Best-effort JSON object recovery from agent result text."""

from __future__ import annotations

import json
import re

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

OBJECT_INSTRUCTION = (
    "Respond with a single JSON object only. "
    "Do not wrap it in prose; a ```json fenced block is acceptable."
)


def with_object_instruction(prompt: str) -> str:
    """Append the structured-output instruction to a prompt."""

    return f"{prompt.rstrip()}\n\n{OBJECT_INSTRUCTION}"


def recover_json_object(text: str) -> dict[str, object] | None:
    """Try direct parse, then a fenced block, then the outermost ``{...}`` span."""

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(stripped[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
