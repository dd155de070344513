"""Token cost estimation for agent invocations."""

from __future__ import annotations

import os
from dataclasses import dataclass

from agent_bridge.orchestrator.models import TokenUsage

PRICING_ENV = "AGENT_BRIDGE_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(*, model: str | None, usage: TokenUsage) -> float | None:
    """Estimate invocation cost in USD from token usage and configured pricing."""

    pricing = _lookup_pricing(model=model or "default")
    if pricing is None:
        return None
    if usage.input_tokens or usage.output_tokens:
        return (usage.input_tokens / 1_000_000) * pricing.input_per_1m + (
            usage.output_tokens / 1_000_000
        ) * pricing.output_per_1m
    return (usage.total_tokens / 1_000_000) * pricing.input_per_1m


def _lookup_pricing(*, model: str) -> ModelPricing | None:
    mapping = parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse ``AGENT_BRIDGE_PRICING``.

    Format:
    - ``model:input_per_1m:output_per_1m``
    - multiple entries separated by ``,``
    - ``*`` as model matches anything without its own entry

    Malformed entries and negative prices are skipped.
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        # Model ids may contain ':' so prices are taken from the right.
        model, sep, prices = value.rpartition(":")
        model, sep2, input_price = model.rpartition(":")
        if not sep or not sep2 or not model.strip():
            continue
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(prices)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[model.strip()] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
