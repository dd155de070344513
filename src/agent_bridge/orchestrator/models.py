"""Domain models shared by the engine, parser, store and orchestrator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class OperationKind(str, Enum):
    """Caller-declared operation class selecting timeout and parse policy."""

    NORMAL = "normal"
    RESEARCH = "research"


class OutputMode(str, Enum):
    """Shape of the value returned upstream."""

    TEXT = "text"
    OBJECT = "object"


class FailureKind(str, Enum):
    """Expected failure modes of one agent invocation."""

    SPAWN_FAILURE = "spawn_failure"
    TIMEOUT = "timeout"
    PROCESS_EXIT = "process_exit"
    PARSE_FAILURE = "parse_failure"
    UPSTREAM_ERROR = "upstream_error"
    RESUME_FAILURE = "resume_failure"


class ProgressSink(Protocol):
    """Receiver for coarse progress updates of one generation."""

    def update(self, fraction: float, label: str) -> None:
        """Report progress in ``[0, 1]`` with a short human-readable label."""


@dataclass(slots=True, frozen=True)
class Diagnostics:
    """Side-channel error and warning lines captured from agent output."""

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_details(self) -> dict[str, object]:
        return {"errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token usage of one invocation; ``estimated`` marks derived numbers."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = True


@dataclass(slots=True)
class ResultRecord:
    """The single structured result extracted from an agent stream."""

    result: Any
    is_error: bool
    usage: TokenUsage
    session_id: str | None = None
    request_id: str | None = None
    subtype: str | None = None
    duration_ms: int | None = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    strategy: str = field(default="line_scan", compare=False)
    partial: bool = field(default=False, compare=False)

    @property
    def result_text(self) -> str:
        """Render the result as text regardless of its decoded shape."""

        if isinstance(self.result, str):
            return self.result
        if self.result is None:
            return ""
        return json.dumps(self.result, ensure_ascii=False)


@dataclass(slots=True)
class ExecutionFailure:
    """Expected failure of one invocation, returned as a value."""

    kind: FailureKind
    message: str
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    exit_code: int | None = None
    stderr_tail: str = ""
    output_preview: str = ""

    def haystack(self) -> str:
        """All human-readable text attached to the failure, for classification."""

        parts = [self.message, *self.diagnostics.errors, self.stderr_tail]
        return "\n".join(part for part in parts if part)


ExecutionOutcome = ResultRecord | ExecutionFailure


@dataclass(slots=True)
class GenerationRequest:
    """One upstream ``generate`` call."""

    prompt: str
    model: str | None
    project_root: Path
    operation: OperationKind = OperationKind.NORMAL
    output_mode: OutputMode = OutputMode.TEXT
    progress: ProgressSink | None = None


@dataclass(slots=True)
class GenerationResult:
    """Upstream response: ``text`` or ``structured`` plus usage and session."""

    text: str | None
    structured: Any
    usage: TokenUsage
    session_id: str | None
    cost_usd: float | None = None
    retried_without_resume: bool = False
    partial: bool = False


class GenerationError(RuntimeError):
    """Generation failure surfaced to the caller with retryability hint."""

    def __init__(self, failure: ExecutionFailure, *, transient: bool) -> None:
        super().__init__(f"{failure.kind.value}: {failure.message}")
        self.failure = failure
        self.transient = transient

    @property
    def kind(self) -> FailureKind:
        return self.failure.kind
