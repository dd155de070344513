"""Agent execution engine implementations."""

from agent_bridge.orchestrator.backend.base import AgentBackend, ProcessHandle
from agent_bridge.orchestrator.backend.cli_backend import CliAgentBackend, build_invocation_args

__all__ = [
    "AgentBackend",
    "CliAgentBackend",
    "ProcessHandle",
    "build_invocation_args",
]
