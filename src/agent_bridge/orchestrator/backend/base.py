"""Backend interface and per-invocation process handle."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from agent_bridge.orchestrator.models import ExecutionOutcome, OperationKind

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessHandle:
    """Live state of one agent invocation.

    ``resolved`` is set by whichever path (live marker, process exit, timeout)
    produced the outcome first; ``cleaned_up`` guards the single cleanup path.
    Times are ``time.monotonic()`` seconds.
    """

    operation: OperationKind
    timeout_seconds: float
    prompt_file: Path | None = None
    process: asyncio.subprocess.Process | None = None
    started_at: float = field(default_factory=time.monotonic)
    last_activity_at: float = field(default_factory=time.monotonic)
    resolved: bool = False
    cleaned_up: bool = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def touch(self, now: float | None = None) -> None:
        self.last_activity_at = time.monotonic() if now is None else now

    def kill(self) -> bool:
        """Send SIGKILL if the process still runs; returns whether it was sent."""

        if not self.alive or self.process is None:
            return False
        try:
            self.process.kill()
        except ProcessLookupError:
            return False
        return True

    def remove_prompt_file(self) -> None:
        if self.prompt_file is None:
            return
        try:
            self.prompt_file.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Failed to remove prompt file %s: %s", self.prompt_file, error)


class AgentBackend(Protocol):
    """Protocol implemented by agent execution engines."""

    async def execute(  # noqa: PLR0913
        self,
        args: list[str],
        prompt_text: str,
        *,
        operation: OperationKind = OperationKind.NORMAL,
        timeout_seconds: float | None = None,
        cwd: Path | None = None,
        model: str | None = None,
    ) -> ExecutionOutcome:
        """Run one invocation and return its result record or failure value."""
