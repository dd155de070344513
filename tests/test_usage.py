from __future__ import annotations

import allure

from agent_bridge.orchestrator.usage import estimate_usage, extract_usage

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Usage and Cost"),
]


def test_estimate_from_api_duration_splits_seventy_thirty() -> None:
    usage = estimate_usage(duration_api_ms=5_000, result_text="ignored when duration is known")

    assert usage.total_tokens == 50
    assert usage.input_tokens == 35
    assert usage.output_tokens == 15
    assert usage.estimated


def test_estimate_without_duration_uses_result_length() -> None:
    usage = estimate_usage(duration_api_ms=0, result_text="x" * 41)

    assert usage.total_tokens == 11
    assert usage.input_tokens + usage.output_tokens == 11


def test_extract_usage_prefers_nested_reported_counts() -> None:
    usage = extract_usage(
        payload={"usage": {"inputTokens": "1,200", "outputTokens": 300}, "duration_api_ms": 9_000},
        result_text="",
    )

    assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (1200, 300, 1500)
    assert not usage.estimated


def test_extract_usage_accepts_top_level_prompt_and_completion_keys() -> None:
    usage = extract_usage(payload={"prompt_tokens": 10, "completion_tokens": 5}, result_text="")

    assert usage.total_tokens == 15
    assert not usage.estimated


def test_extract_usage_splits_reported_total() -> None:
    usage = extract_usage(payload={"usage": {"total_tokens": 100}}, result_text="")

    assert usage.input_tokens == 70
    assert usage.output_tokens == 30
    assert usage.total_tokens == 100
    assert not usage.estimated


def test_extract_usage_ignores_booleans_and_falls_back_to_estimate() -> None:
    usage = extract_usage(
        payload={"usage": {"input_tokens": True}, "duration_api_ms": True},
        result_text="abcd",
    )

    assert usage.total_tokens == 1
    assert usage.estimated
