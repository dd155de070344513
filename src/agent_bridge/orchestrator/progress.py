"""Coarse phase-based progress reporting for one generation."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from agent_bridge.orchestrator.models import ProgressSink, TokenUsage

DEFAULT_PHASES: tuple[str, ...] = (
    "Starting agent",
    "Processing request",
    "Generating response",
    "Finalizing",
)


@runtime_checkable
class UsageSink(Protocol):
    """Optional extension of a progress sink that also wants usage and cost."""

    def report_usage(self, usage: TokenUsage, cost_usd: float | None) -> None:
        """Receive token usage and estimated cost of the finished generation."""


class PhaseTracker:
    """Map named phases onto ``[0, 1]`` fractions for a ``ProgressSink``.

    A ``None`` sink makes every call a no-op.
    """

    def __init__(
        self,
        sink: ProgressSink | None,
        *,
        phases: tuple[str, ...] = DEFAULT_PHASES,
    ) -> None:
        if not phases:
            raise ValueError("phases must not be empty.")
        self.sink = sink
        self.phases = phases
        self.index = -1

    @property
    def current_phase(self) -> str | None:
        return self.phases[self.index] if self.index >= 0 else None

    def advance(self, phase: str | None = None, *, detail: str | None = None) -> None:
        """Move to ``phase`` (or the next phase) and report it."""

        if phase is not None and phase in self.phases:
            self.index = self.phases.index(phase)
        elif self.index < len(self.phases) - 1:
            self.index += 1
        label = self.phases[self.index]
        if detail:
            label = f"{label}: {detail}"
        self._update(self.index / max(1, len(self.phases) - 1), label)

    def note(self, detail: str) -> None:
        """Report ``detail`` without moving to another phase."""

        fraction = max(self.index, 0) / max(1, len(self.phases) - 1)
        phase = self.current_phase or self.phases[0]
        self._update(fraction, f"{phase}: {detail}")

    def complete(self, usage: TokenUsage, cost_usd: float | None) -> None:
        self.index = len(self.phases) - 1
        label = f"Completed ({usage.input_tokens}/{usage.output_tokens} tokens"
        label += ", estimated" if usage.estimated else ""
        label += f", ${cost_usd:.4f})" if cost_usd is not None else ")"
        self._update(1.0, label)
        if isinstance(self.sink, UsageSink):
            self.sink.report_usage(usage, cost_usd)

    def _update(self, fraction: float, label: str) -> None:
        if self.sink is not None:
            self.sink.update(min(1.0, max(0.0, fraction)), label)


class RecordingProgress:
    """Sink that keeps every update; used by the CLI and tests."""

    def __init__(self) -> None:
        self.updates: list[tuple[float, str]] = []
        self.usage: TokenUsage | None = None
        self.cost_usd: float | None = None

    def update(self, fraction: float, label: str) -> None:
        self.updates.append((fraction, label))

    def report_usage(self, usage: TokenUsage, cost_usd: float | None) -> None:
        self.usage = usage
        self.cost_usd = cost_usd
