"""Runtime configuration for the agent bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from agent_bridge.orchestrator.failure_classifier import DEFAULT_RESUME_FAILURE_PATTERNS


@dataclass(slots=True)
class AgentSettings:
    """How the agent executable is invoked."""

    executable: str = "cursor-agent"
    default_model: str | None = None
    api_key: str | None = None
    with_diffs: bool = False
    extra_args: str = ""
    model_flag: str = "--model"
    approvals_enabled: bool = True

    @property
    def process_name(self) -> str:
        """Basename used to recognize agent processes in the OS process table."""

        head = self.executable.strip().split(maxsplit=1)[0] if self.executable.strip() else ""
        return os.path.basename(head) or "cursor-agent"


@dataclass(slots=True)
class ExecutionSettings:
    """Timeouts and termination policy of one invocation."""

    timeout_seconds: float = 120.0
    research_timeout_seconds: float = 300.0
    settle_delay_seconds: float = 0.2
    research_settle_delay_seconds: float = 1.0
    termination_grace_seconds: float = 2.0
    transient_exit_codes: tuple[int, ...] = ()


@dataclass(slots=True)
class SessionSettings:
    """Session continuity store settings."""

    enabled: bool = True
    max_sessions: int = 50
    max_resume_attempts: int = 3
    extra_resume_failure_patterns: tuple[str, ...] = ()

    @property
    def resume_failure_patterns(self) -> tuple[str, ...]:
        return DEFAULT_RESUME_FAILURE_PATTERNS + self.extra_resume_failure_patterns


@dataclass(slots=True)
class LifecycleSettings:
    """Background sweep of in-flight and orphaned agent processes."""

    sweep_interval_seconds: float = 30.0
    max_age_seconds: float = 600.0
    inactivity_grace_seconds: float = 30.0
    orphan_scan_enabled: bool = True
    orphan_scan_interval_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``AGENT_BRIDGE_*`` environment variables."""

        settings = cls(
            agent=AgentSettings(
                executable=os.getenv("AGENT_BRIDGE_AGENT_EXECUTABLE", "cursor-agent"),
                default_model=os.getenv("AGENT_BRIDGE_DEFAULT_MODEL") or None,
                api_key=os.getenv("AGENT_BRIDGE_API_KEY") or None,
                with_diffs=_env_bool("AGENT_BRIDGE_WITH_DIFFS", default=False),
                extra_args=os.getenv("AGENT_BRIDGE_AGENT_EXTRA_ARGS", ""),
                model_flag=os.getenv("AGENT_BRIDGE_MODEL_FLAG", "--model"),
                approvals_enabled=_env_bool("AGENT_BRIDGE_APPROVALS_ENABLED", default=True),
            ),
            execution=ExecutionSettings(
                timeout_seconds=_env_float("AGENT_BRIDGE_TIMEOUT_SECONDS", 120.0),
                research_timeout_seconds=_env_float(
                    "AGENT_BRIDGE_RESEARCH_TIMEOUT_SECONDS",
                    300.0,
                ),
                settle_delay_seconds=_env_float("AGENT_BRIDGE_SETTLE_DELAY_SECONDS", 0.2),
                research_settle_delay_seconds=_env_float(
                    "AGENT_BRIDGE_RESEARCH_SETTLE_DELAY_SECONDS",
                    1.0,
                ),
                termination_grace_seconds=_env_float(
                    "AGENT_BRIDGE_TERMINATION_GRACE_SECONDS",
                    2.0,
                ),
                transient_exit_codes=_env_int_tuple("AGENT_BRIDGE_TRANSIENT_EXIT_CODES"),
            ),
            sessions=SessionSettings(
                enabled=_env_bool("AGENT_BRIDGE_SESSIONS_ENABLED", default=True),
                max_sessions=_env_int("AGENT_BRIDGE_MAX_SESSIONS", 50),
                max_resume_attempts=_env_int("AGENT_BRIDGE_MAX_RESUME_ATTEMPTS", 3),
                extra_resume_failure_patterns=_env_csv("AGENT_BRIDGE_RESUME_FAILURE_PATTERNS"),
            ),
            lifecycle=LifecycleSettings(
                sweep_interval_seconds=_env_float("AGENT_BRIDGE_SWEEP_INTERVAL_SECONDS", 30.0),
                max_age_seconds=_env_float("AGENT_BRIDGE_MAX_PROCESS_AGE_SECONDS", 600.0),
                inactivity_grace_seconds=_env_float(
                    "AGENT_BRIDGE_INACTIVITY_GRACE_SECONDS",
                    30.0,
                ),
                orphan_scan_enabled=_env_bool("AGENT_BRIDGE_ORPHAN_SCAN_ENABLED", default=True),
                orphan_scan_interval_seconds=_env_float(
                    "AGENT_BRIDGE_ORPHAN_SCAN_INTERVAL_SECONDS",
                    60.0,
                ),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if not self.agent.executable.strip():
            raise ValueError("AGENT_BRIDGE_AGENT_EXECUTABLE must not be empty.")
        positive = (
            ("AGENT_BRIDGE_TIMEOUT_SECONDS", self.execution.timeout_seconds),
            ("AGENT_BRIDGE_RESEARCH_TIMEOUT_SECONDS", self.execution.research_timeout_seconds),
            ("AGENT_BRIDGE_SWEEP_INTERVAL_SECONDS", self.lifecycle.sweep_interval_seconds),
            ("AGENT_BRIDGE_MAX_PROCESS_AGE_SECONDS", self.lifecycle.max_age_seconds),
            ("AGENT_BRIDGE_MAX_SESSIONS", self.sessions.max_sessions),
            ("AGENT_BRIDGE_MAX_RESUME_ATTEMPTS", self.sessions.max_resume_attempts),
        )
        for name, value in positive:
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        non_negative = (
            ("AGENT_BRIDGE_SETTLE_DELAY_SECONDS", self.execution.settle_delay_seconds),
            (
                "AGENT_BRIDGE_RESEARCH_SETTLE_DELAY_SECONDS",
                self.execution.research_settle_delay_seconds,
            ),
            ("AGENT_BRIDGE_TERMINATION_GRACE_SECONDS", self.execution.termination_grace_seconds),
            ("AGENT_BRIDGE_INACTIVITY_GRACE_SECONDS", self.lifecycle.inactivity_grace_seconds),
        )
        for name, value in non_negative:
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer for {name}: {value!r}") from error


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def _env_int_tuple(name: str) -> tuple[int, ...]:
    values: list[int] = []
    for part in _env_csv(name):
        try:
            values.append(int(part))
        except ValueError as error:
            raise ValueError(f"Invalid exit code in {name}: {part!r}") from error
    return tuple(values)
