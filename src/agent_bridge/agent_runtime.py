"""Runtime context owning every long-lived piece of the bridge.

Construct one ``BridgeRuntime`` at host startup, ``await start()`` (or use it
as an async context manager) and ``await shutdown()`` on exit.  The host's own
signal handler may call ``emergency_cleanup()`` synchronously.
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

from agent_bridge.config import Settings
from agent_bridge.orchestrator.backend.cli_backend import CliAgentBackend
from agent_bridge.orchestrator.lifecycle import LifecycleManager
from agent_bridge.orchestrator.models import GenerationRequest, GenerationResult
from agent_bridge.orchestrator.service import GenerationService
from agent_bridge.orchestrator.session_store import SessionStore
from agent_bridge.workspace_approvals import ensure_workspace_approvals

logger = logging.getLogger(__name__)


class BridgeRuntime:
    """Settings, lifecycle manager, per-project stores, engine and service."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings.from_env()
        agent = self.settings.agent
        execution = self.settings.execution
        lifecycle = self.settings.lifecycle

        self.lifecycle = LifecycleManager(
            agent_name=agent.process_name,
            sweep_interval_seconds=lifecycle.sweep_interval_seconds,
            max_age_seconds=lifecycle.max_age_seconds,
            inactivity_grace_seconds=lifecycle.inactivity_grace_seconds,
            orphan_scan_enabled=lifecycle.orphan_scan_enabled,
            orphan_scan_interval_seconds=lifecycle.orphan_scan_interval_seconds,
            termination_grace_seconds=execution.termination_grace_seconds,
        )
        self.backend = CliAgentBackend(
            lifecycle=self.lifecycle,
            timeout_seconds=execution.timeout_seconds,
            research_timeout_seconds=execution.research_timeout_seconds,
            settle_delay_seconds=execution.settle_delay_seconds,
            research_settle_delay_seconds=execution.research_settle_delay_seconds,
            termination_grace_seconds=execution.termination_grace_seconds,
        )
        self._stores: dict[Path, SessionStore] = {}
        self.service = GenerationService(
            backend=self.backend,
            store_for=self.store_for,
            executable=agent.executable,
            default_model=agent.default_model,
            api_key=agent.api_key,
            with_diffs=agent.with_diffs,
            extra_args=agent.extra_args,
            model_flag=agent.model_flag,
            resume_failure_patterns=self.settings.sessions.resume_failure_patterns,
            transient_exit_codes=execution.transient_exit_codes,
            approvals=ensure_workspace_approvals if agent.approvals_enabled else None,
        )

    def store_for(self, project_root: Path) -> SessionStore:
        """Session store of ``project_root``, loaded once per runtime."""

        resolved = Path(project_root).resolve()
        store = self._stores.get(resolved)
        if store is None:
            sessions = self.settings.sessions
            store = SessionStore.for_project(
                resolved,
                max_sessions=sessions.max_sessions,
                max_resume_attempts=sessions.max_resume_attempts,
                enabled=sessions.enabled,
            )
            self._stores[resolved] = store
        return store

    async def start(self) -> None:
        await self.lifecycle.start()

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        return await self.service.generate(request)

    async def shutdown(self) -> None:
        cleaned = await self.lifecycle.shutdown()
        self._stores.clear()
        logger.info("Agent bridge runtime stopped (cleaned=%d)", cleaned)

    def emergency_cleanup(self) -> int:
        """Synchronous last-resort cleanup for signal handlers."""

        return self.lifecycle.emergency_cleanup_all()

    async def __aenter__(self) -> BridgeRuntime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.shutdown()
