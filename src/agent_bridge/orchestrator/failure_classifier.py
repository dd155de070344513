"""Deterministic classification of agent failures.

Two questions are answered here: did the agent refuse to resume the cached
session (so the orchestrator should retry once without ``--resume``), and is an
upstream failure worth retrying by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agent_bridge.orchestrator.models import ExecutionFailure, FailureKind, ResultRecord

FAILURE_CLASSIFIER_VERSION = 1

# The agent's error vocabulary is not versioned; settings may extend this list.
DEFAULT_RESUME_FAILURE_PATTERNS: tuple[str, ...] = (
    "session expired",
    "session not found",
    "chat not found",
    "conversation not found",
    "no conversation found",
    "invalid chat id",
    "invalid session",
    "unable to resume",
    "could not resume",
    "failed to resume",
    "resume failed",
)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "login required",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "econnreset",
    "etimedout",
)


class FailureClass(str, Enum):
    """Retry-relevant category of an upstream failure."""

    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class is FailureClass.TRANSIENT

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def outcome_text(outcome: ResultRecord | ExecutionFailure) -> str:
    """Human-readable text of an error outcome, for pattern matching."""

    if isinstance(outcome, ExecutionFailure):
        return outcome.haystack()
    parts = [outcome.result_text, *outcome.diagnostics.errors]
    return "\n".join(part for part in parts if part)


def matches_resume_failure(
    text: str,
    *,
    patterns: tuple[str, ...] = DEFAULT_RESUME_FAILURE_PATTERNS,
) -> str | None:
    """Return the matched resume-failure pattern, if any."""

    return _first_match(text.lower(), patterns)


def classify_failure(
    failure: ExecutionFailure,
    *,
    transient_exit_codes: tuple[int, ...] = (),
) -> FailureClassification:
    """Classify an execution failure into a deterministic retry class."""

    if failure.kind is FailureKind.TIMEOUT:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            matched_rule="timeout",
            matched_pattern=None,
        )
    if failure.kind is FailureKind.SPAWN_FAILURE:
        return FailureClassification(
            failure_class=FailureClass.NON_RETRYABLE,
            matched_rule="spawn_failure",
            matched_pattern=None,
        )

    haystack = failure.haystack().lower()

    rules: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
        ("billing_or_quota", FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
        ("access_or_auth", FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
        ("model_not_available", FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
        ("rate_limit_transient", FailureClass.TRANSIENT, _RATE_LIMIT_TRANSIENT_PATTERNS),
    )
    for rule, failure_class, patterns in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    exit_code_transient = failure.exit_code in transient_exit_codes
    if pattern is not None or exit_code_transient:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            matched_rule="generic_transient" if pattern is not None else "transient_exit_code",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern.lower() in haystack:
            return pattern
    return None
