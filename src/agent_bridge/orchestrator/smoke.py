"""Availability probe and synthetic run for the configured agent."""

from __future__ import annotations

import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from agent_bridge.orchestrator.models import GenerationError, GenerationRequest
from agent_bridge.orchestrator.service import GenerationService

_PREVIEW_CHARS = 500


@dataclass(slots=True)
class AgentProbeResult:
    """Whether the agent executable exists and answers ``--version``."""

    executable: str
    resolved: str | None
    available: bool
    version: str | None
    error: str | None


@dataclass(slots=True)
class SyntheticRunResult:
    run_ok: bool
    session_id: str | None
    error: str | None
    preview: str


def probe_agent(executable: str, *, timeout_seconds: float = 5.0) -> AgentProbeResult:
    """Run ``<agent> --version`` and report the outcome."""

    argv = shlex.split(executable.strip())
    if not argv:
        return AgentProbeResult(
            executable=executable,
            resolved=None,
            available=False,
            version=None,
            error="Agent executable is empty.",
        )

    resolved = shutil.which(argv[0])
    if resolved is None:
        return AgentProbeResult(
            executable=executable,
            resolved=None,
            available=False,
            version=None,
            error=f"Executable not found in PATH: {argv[0]}",
        )

    try:
        completed = subprocess.run(  # noqa: S603
            [resolved, *argv[1:], "--version"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return _unavailable(executable, resolved, "Probe timed out.")
    except OSError as error:
        return _unavailable(executable, resolved, f"Probe failed to start: {error}")

    if completed.returncode != 0:
        detail = _truncate(completed.stderr.strip() or completed.stdout.strip())
        return _unavailable(
            executable,
            resolved,
            f"Probe exited with code {completed.returncode}: {detail}",
        )
    return AgentProbeResult(
        executable=executable,
        resolved=resolved,
        available=True,
        version=completed.stdout.strip() or None,
        error=None,
    )


async def run_synthetic(
    service: GenerationService,
    *,
    project_root: Path,
    model: str | None,
    prompt: str,
    expect_substring: str,
) -> SyntheticRunResult:
    """One real generation; passes when the text contains ``expect_substring``."""

    try:
        result = await service.generate(
            GenerationRequest(prompt=prompt, model=model, project_root=project_root),
        )
    except GenerationError as error:
        return SyntheticRunResult(
            run_ok=False,
            session_id=None,
            error=str(error),
            preview=_truncate(error.failure.output_preview or error.failure.stderr_tail),
        )

    text = result.text or ""
    if expect_substring.lower() not in text.lower():
        return SyntheticRunResult(
            run_ok=False,
            session_id=result.session_id,
            error=f"Expected substring not found in result: {expect_substring!r}",
            preview=_truncate(text),
        )
    return SyntheticRunResult(
        run_ok=True,
        session_id=result.session_id,
        error=None,
        preview=_truncate(text),
    )


def _unavailable(executable: str, resolved: str, error: str) -> AgentProbeResult:
    return AgentProbeResult(
        executable=executable,
        resolved=resolved,
        available=False,
        version=None,
        error=error,
    )


def _truncate(value: str) -> str:
    if len(value) <= _PREVIEW_CHARS:
        return value
    return value[:_PREVIEW_CHARS] + "..."
