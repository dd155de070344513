"""Token usage extraction and estimation for agent result events."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from agent_bridge.orchestrator.models import TokenUsage

_INPUT_SHARE = 0.7
_MS_PER_TOKEN = 100
_CHARS_PER_TOKEN = 4

_INPUT_KEYS: tuple[str, ...] = ("input_tokens", "prompt_tokens", "inputTokens", "promptTokens")
_OUTPUT_KEYS: tuple[str, ...] = (
    "output_tokens",
    "completion_tokens",
    "outputTokens",
    "completionTokens",
)
_TOTAL_KEYS: tuple[str, ...] = ("total_tokens", "totalTokens")


def extract_usage(*, payload: Mapping[str, Any], result_text: str) -> TokenUsage:
    """Return reported token counts when present, otherwise an estimate.

    The agent does not report tokens reliably, so the fallback is derived
    from ``duration_api_ms`` (one token per 100 ms of API time) or, without a
    duration, from the result length (four characters per token).
    """

    reported = _reported_usage(payload)
    if reported is not None:
        return reported

    duration = payload.get("duration_api_ms")
    if isinstance(duration, bool) or not isinstance(duration, int | float):
        duration = 0
    return estimate_usage(duration_api_ms=float(duration), result_text=result_text)


def estimate_usage(*, duration_api_ms: float, result_text: str) -> TokenUsage:
    """Estimate usage and split it 70/30 between input and output."""

    if duration_api_ms > 0:
        total = round(duration_api_ms / _MS_PER_TOKEN)
    else:
        total = math.ceil(len(result_text) / _CHARS_PER_TOKEN)
    input_tokens = round(total * _INPUT_SHARE)
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=total - input_tokens,
        total_tokens=total,
        estimated=True,
    )


def _reported_usage(payload: Mapping[str, Any]) -> TokenUsage | None:
    sources: list[Mapping[str, Any]] = []
    nested = payload.get("usage")
    if isinstance(nested, Mapping):
        sources.append(nested)
    sources.append(payload)

    for source in sources:
        prompt = _first_int(source, _INPUT_KEYS)
        completion = _first_int(source, _OUTPUT_KEYS)
        total = _first_int(source, _TOTAL_KEYS)
        if prompt is None and completion is None and total is None:
            continue
        total_was_reported = total is not None
        if total is None:
            total = (prompt or 0) + (completion or 0)
        if prompt is None and completion is None:
            prompt = round(total * _INPUT_SHARE)
            completion = total - prompt
        return TokenUsage(
            input_tokens=prompt or 0,
            output_tokens=completion or 0,
            total_tokens=total,
            estimated=not (total_was_reported or (prompt is not None and completion is not None)),
        )
    return None


def _first_int(source: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            raw = value.replace(",", "").strip()
            if raw.isdigit():
                return int(raw)
    return None
