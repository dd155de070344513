from __future__ import annotations

import allure

from agent_bridge.orchestrator.failure_classifier import (
    DEFAULT_RESUME_FAILURE_PATTERNS,
    FAILURE_CLASSIFIER_VERSION,
    FailureClass,
    classify_failure,
    matches_resume_failure,
    outcome_text,
)
from agent_bridge.orchestrator.models import (
    Diagnostics,
    ExecutionFailure,
    FailureKind,
    ResultRecord,
    TokenUsage,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Failure Classification"),
]


def _failure(message: str, *, exit_code: int | None = 1, stderr: str = "") -> ExecutionFailure:
    return ExecutionFailure(
        kind=FailureKind.PROCESS_EXIT,
        message=message,
        exit_code=exit_code,
        stderr_tail=stderr,
    )


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_failure(
        _failure("agent exited", exit_code=137, stderr="Quota exceeded for this project"),
        transient_exit_codes=(137, 143),
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert not classified.transient


def test_classifier_maps_model_unavailable() -> None:
    classified = classify_failure(_failure("Invalid model requested"))
    assert classified.failure_class == FailureClass.MODEL_NOT_AVAILABLE


def test_classifier_maps_auth_errors_from_diagnostics() -> None:
    failure = ExecutionFailure(
        kind=FailureKind.UPSTREAM_ERROR,
        message="agent reported an error",
        diagnostics=Diagnostics(errors=("Error: not logged in",)),
    )
    classified = classify_failure(failure)
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.matched_pattern == "not logged in"


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_failure(_failure("HTTP 429 too many requests, please retry"))
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.transient


def test_classifier_uses_transient_exit_codes() -> None:
    classified = classify_failure(
        _failure("agent exited", exit_code=143),
        transient_exit_codes=(143,),
    )
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "transient_exit_code"
    assert classified.matched_pattern is None


def test_timeout_is_transient_and_spawn_failure_is_not() -> None:
    timeout = classify_failure(ExecutionFailure(kind=FailureKind.TIMEOUT, message="quota"))
    spawn = classify_failure(
        ExecutionFailure(kind=FailureKind.SPAWN_FAILURE, message="try again later"),
    )
    assert timeout.failure_class == FailureClass.TRANSIENT
    assert timeout.matched_rule == "timeout"
    assert spawn.failure_class == FailureClass.NON_RETRYABLE


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_failure(_failure("fatal: unsupported syntax in prompt template"))
    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.to_details() == {
        "classifier_version": 1,
        "failure_class": "non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }


def test_resume_failure_matching_is_case_insensitive() -> None:
    assert matches_resume_failure("Error: Session EXPIRED, start over") == "session expired"
    assert matches_resume_failure("everything is fine") is None
    assert matches_resume_failure("chat gone", patterns=("chat gone",)) == "chat gone"
    assert "could not resume" in DEFAULT_RESUME_FAILURE_PATTERNS


def test_outcome_text_combines_result_and_diagnostics() -> None:
    record = ResultRecord(
        result="Error: session not found",
        is_error=True,
        usage=TokenUsage(),
        diagnostics=Diagnostics(errors=("Error: resume failed",)),
    )
    assert outcome_text(record) == "Error: session not found\nError: resume failed"
    assert outcome_text(_failure("boom", stderr="tail")) == "boom\ntail"
