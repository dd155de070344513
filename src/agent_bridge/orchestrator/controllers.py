"""Controllers for agent-bridge CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from agent_bridge.agent_runtime import BridgeRuntime
from agent_bridge.config import Settings
from agent_bridge.orchestrator.models import (
    GenerationError,
    GenerationRequest,
    GenerationResult,
    OperationKind,
    OutputMode,
)
from agent_bridge.orchestrator.progress import RecordingProgress
from agent_bridge.orchestrator.session_store import SessionStore
from agent_bridge.orchestrator.smoke import SyntheticRunResult, probe_agent, run_synthetic
from agent_bridge.workspace_approvals import approval_status, ensure_workspace_approvals

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerateCommand:
    """CLI input for one generation."""

    prompt: str
    project_root: Path
    model: str | None
    operation: OperationKind
    output_mode: OutputMode
    timeout_seconds: float | None
    show_meta: bool


@dataclass(slots=True)
class DoctorCommand:
    """CLI input for the environment check."""

    project_root: Path
    model: str | None
    run: bool
    prompt: str
    expect_substring: str
    probe_timeout_seconds: float


@dataclass(slots=True)
class SessionsCommand:
    project_root: Path


@dataclass(slots=True)
class SessionsForgetCommand:
    project_root: Path
    model: str | None


@dataclass(slots=True)
class ApprovalsCommand:
    project_root: Path


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus overall success."""

    lines: list[str]
    success: bool


class BridgeCliController:
    """Coordinates generation, diagnostics and session maintenance commands."""

    def generate(self, command: GenerateCommand) -> CommandResult:
        try:
            settings = Settings.from_env()
        except ValueError as error:
            return CommandResult(lines=[f"Invalid configuration: {error}"], success=False)
        if command.timeout_seconds is not None:
            execution = replace(
                settings.execution,
                timeout_seconds=command.timeout_seconds,
                research_timeout_seconds=command.timeout_seconds,
            )
            settings = replace(settings, execution=execution)
        runtime = BridgeRuntime(settings)
        progress = RecordingProgress()
        request = GenerationRequest(
            prompt=command.prompt,
            model=command.model,
            project_root=command.project_root,
            operation=command.operation,
            output_mode=command.output_mode,
            progress=progress,
        )
        try:
            with _emergency_cleanup_on_signal(runtime):
                result = asyncio.run(_generate_once(runtime, request))
        except GenerationError as error:
            lines = [f"Generation failed: {error}"]
            lines.append(f"transient={'yes' if error.transient else 'no'}")
            if error.failure.diagnostics.errors:
                lines.extend(f"  {line}" for line in error.failure.diagnostics.errors)
            if error.failure.stderr_tail:
                lines.append(f"stderr={error.failure.stderr_tail}")
            return CommandResult(lines=lines, success=False)

        lines = [_render_result(result)]
        if command.show_meta:
            lines.extend(_render_meta(result))
        return CommandResult(lines=lines, success=True)

    def doctor(self, command: DoctorCommand) -> CommandResult:
        try:
            settings = Settings.from_env()
        except ValueError as error:
            return CommandResult(lines=["Agent bridge doctor:", str(error)], success=False)

        probe = probe_agent(
            settings.agent.executable,
            timeout_seconds=command.probe_timeout_seconds,
        )
        lines = [
            "Agent bridge doctor:",
            f"executable={settings.agent.executable}",
            f"resolved={probe.resolved or '-'}",
            f"available={'yes' if probe.available else 'no'}",
        ]
        if probe.version:
            lines.append(f"version={probe.version}")
        if probe.error:
            lines.append(f"error={probe.error}")

        store = _project_store(command.project_root, settings)
        lines.append("Sessions:")
        lines.extend(f"  {line}" for line in store.stats().to_lines())

        status = approval_status(command.project_root)
        lines.append(
            f"Approvals: trusted={'yes' if status.workspace_trusted else 'no'} "
            f"mcp_approvals={len(status.approvals)} dir={status.workspace_dir}",
        )

        success = probe.available
        if command.run and probe.available:
            runtime = BridgeRuntime(settings)
            run = asyncio.run(_synthetic_once(runtime, command))
            line = f"run={'ok' if run.run_ok else 'failed'}"
            if run.session_id:
                line += f" session_id={run.session_id}"
            if run.error:
                line += f" error={run.error}"
            lines.append(line)
            if run.preview:
                lines.append(f"  preview={run.preview}")
            success = success and run.run_ok

        lines.append(f"Doctor status: {'passed' if success else 'failed'}")
        if not probe.available:
            lines.append("Hint: install the agent CLI or set AGENT_BRIDGE_AGENT_EXECUTABLE.")
        return CommandResult(lines=lines, success=success)

    def sessions_stats(self, command: SessionsCommand) -> list[str]:
        store = _project_store(command.project_root)
        return [f"Session store: {store.path}", *store.stats().to_lines()]

    def sessions_clear(self, command: SessionsCommand) -> list[str]:
        store = _project_store(command.project_root)
        removed = store.clear()
        return [f"Session store cleared: removed={removed} path={store.path}"]

    def sessions_cleanup_failed(self, command: SessionsCommand) -> list[str]:
        store = _project_store(command.project_root)
        removed = store.cleanup_failed()
        return [f"Failed sessions removed: {removed}"]

    def sessions_forget(self, command: SessionsForgetCommand) -> list[str]:
        store = _project_store(command.project_root)
        key = SessionStore.context_key(command.project_root, command.model)
        if store.forget(key):
            return [f"Session forgotten: {key}"]
        return [f"No cached session for {key}"]

    def approvals_ensure(self, command: ApprovalsCommand) -> CommandResult:
        result = ensure_workspace_approvals(command.project_root)
        if not result.success:
            return CommandResult(
                lines=[f"Failed to seed approvals: {result.error}"],
                success=False,
            )
        return CommandResult(
            lines=[
                f"Workspace trusted: {result.workspace_dir}",
                f"MCP approvals: {len(result.approvals)}",
                *(f"  {approval}" for approval in result.approvals),
            ],
            success=True,
        )


async def _generate_once(runtime: BridgeRuntime, request: GenerationRequest) -> GenerationResult:
    async with runtime:
        return await runtime.generate(request)


async def _synthetic_once(runtime: BridgeRuntime, command: DoctorCommand) -> SyntheticRunResult:
    async with runtime:
        return await run_synthetic(
            runtime.service,
            project_root=command.project_root,
            model=command.model,
            prompt=command.prompt,
            expect_substring=command.expect_substring,
        )


def _project_store(project_root: Path, settings: Settings | None = None) -> SessionStore:
    settings = settings or Settings.from_env()
    return SessionStore.for_project(
        project_root,
        max_sessions=settings.sessions.max_sessions,
        max_resume_attempts=settings.sessions.max_resume_attempts,
        enabled=settings.sessions.enabled,
    )


def _render_result(result: GenerationResult) -> str:
    if result.structured is not None:
        return json.dumps(result.structured, ensure_ascii=False, indent=2, sort_keys=True)
    return result.text or ""


def _render_meta(result: GenerationResult) -> list[str]:
    usage = result.usage
    cost = f"{result.cost_usd:.6f}" if result.cost_usd is not None else "-"
    return [
        f"session_id={result.session_id or '-'}",
        f"tokens_in={usage.input_tokens} tokens_out={usage.output_tokens} "
        f"tokens_total={usage.total_tokens} estimated={'yes' if usage.estimated else 'no'}",
        f"cost_usd={cost}",
        f"retried_without_resume={'yes' if result.retried_without_resume else 'no'}",
        f"partial={'yes' if result.partial else 'no'}",
    ]


@contextmanager
def _emergency_cleanup_on_signal(runtime: BridgeRuntime) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        cleaned = runtime.emergency_cleanup()
        logger.warning("Received %s; killed %d agent processes", name, cleaned)
        raise SystemExit(128 + signum)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
