"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_EXECUTABLE = shlex.join(
    [sys.executable, "-m", "agent_bridge.orchestrator.backend.echo_agent"],
)


@pytest.fixture(autouse=True)
def _clean_bridge_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolate tests from the developer's agent configuration and home directory."""

    for name in list(os.environ):
        if name.startswith("AGENT_BRIDGE_"):
            monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    # The echo agent runs as a child interpreter and must import the package too.
    python_path = [str(SRC_DIR), *filter(None, [os.environ.get("PYTHONPATH")])]
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(python_path))


@pytest.fixture()
def echo_agent_executable() -> str:
    return ECHO_AGENT_EXECUTABLE


@pytest.fixture()
def echo_agent_env(monkeypatch: pytest.MonkeyPatch):
    """Point ``Settings.from_env`` at the scripted echo agent with extra flags."""

    def _configure(*extra_args: str) -> None:
        monkeypatch.setenv("AGENT_BRIDGE_AGENT_EXECUTABLE", ECHO_AGENT_EXECUTABLE)
        monkeypatch.setenv("AGENT_BRIDGE_AGENT_EXTRA_ARGS", shlex.join(extra_args))
        monkeypatch.setenv("AGENT_BRIDGE_ORPHAN_SCAN_ENABLED", "0")

    return _configure


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root
