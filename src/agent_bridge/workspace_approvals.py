"""Pre-seed agent workspace trust and MCP approvals.

Without these files the agent asks interactively whether the workspace is
trusted and whether each configured MCP server may run, which hangs a
non-interactive invocation until its timeout.

Layout under ``~/.cursor/projects/<path-segments-joined-by-dash>/``:

- ``.workspace-trusted`` -- ``{"trustedAt": ..., "workspacePath": ...}``
- ``mcp-approvals.json`` -- list of ``<serverKey>-<sha256[:16]>`` ids
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TRUSTED_FILENAME = ".workspace-trusted"
APPROVALS_FILENAME = "mcp-approvals.json"
LOCAL_MCP_CONFIG = Path(".cursor") / "mcp.json"


@dataclass(slots=True)
class ApprovalResult:
    """Outcome of seeding approvals for one workspace."""

    success: bool
    workspace_dir: Path | None = None
    approvals: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class ApprovalStatus:
    workspace_dir: Path
    workspace_trusted: bool
    approvals: list[str]


def agent_project_dir(workspace: Path, *, home: Path | None = None) -> Path:
    """Directory the agent keeps per-workspace state in."""

    resolved = Path(workspace).resolve()
    segments = [part for part in resolved.parts if part not in (resolved.anchor, "")]
    base = home if home is not None else Path.home()
    return base / ".cursor" / "projects" / "-".join(segments)


def approval_id(server_key: str, server_config: dict[str, Any], workspace: str) -> str:
    """Deterministic approval id the agent expects for one MCP server."""

    if not server_key:
        raise ValueError("MCP server key must be a non-empty string.")
    if not isinstance(server_config, dict):
        raise ValueError(f"MCP server config for {server_key!r} must be an object.")
    if not workspace:
        raise ValueError("Workspace path must be a non-empty string.")

    payload = {"path": workspace, "server": _normalize_server_config(server_config)}
    # Hash input must match the agent's compact JSON serialization byte for byte.
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]
    return f"{server_key}-{digest}"


def load_mcp_servers(workspace: Path, *, home: Path | None = None) -> dict[str, dict[str, Any]]:
    """Merge global and project MCP server configs; project entries win."""

    base = home if home is not None else Path.home()
    servers: dict[str, dict[str, Any]] = {}
    for config_path in (base / ".cursor" / "mcp.json", Path(workspace) / LOCAL_MCP_CONFIG):
        for key, value in _read_mcp_servers(config_path).items():
            servers[key] = value
    return servers


def ensure_workspace_approvals(workspace: Path, *, home: Path | None = None) -> ApprovalResult:
    """Write trust marker and merge approvals for every configured MCP server."""

    resolved = Path(workspace).resolve()
    workspace_dir = agent_project_dir(resolved, home=home)
    try:
        workspace_dir.mkdir(parents=True, exist_ok=True)
        trusted = {
            "trustedAt": _utc_timestamp(),
            "workspacePath": str(resolved),
        }
        (workspace_dir / TRUSTED_FILENAME).write_text(json.dumps(trusted, indent=2), "utf-8")

        existing = _read_existing_approvals(workspace_dir / APPROVALS_FILENAME)
        new_ids = [
            approval_id(key, config, str(resolved))
            for key, config in load_mcp_servers(resolved, home=home).items()
            if isinstance(config, dict)
        ]
        merged = list(dict.fromkeys([*existing, *new_ids]))
        (workspace_dir / APPROVALS_FILENAME).write_text(json.dumps(merged, indent=2), "utf-8")
    except (OSError, ValueError) as error:
        logger.warning("Failed to seed agent approvals for %s: %s", resolved, error)
        return ApprovalResult(success=False, workspace_dir=workspace_dir, error=str(error))

    logger.info(
        "Agent approvals ready for %s (%d MCP servers)",
        resolved,
        len(new_ids),
    )
    return ApprovalResult(success=True, workspace_dir=workspace_dir, approvals=merged)


def approval_status(workspace: Path, *, home: Path | None = None) -> ApprovalStatus:
    workspace_dir = agent_project_dir(workspace, home=home)
    return ApprovalStatus(
        workspace_dir=workspace_dir,
        workspace_trusted=(workspace_dir / TRUSTED_FILENAME).exists(),
        approvals=_read_existing_approvals(workspace_dir / APPROVALS_FILENAME),
    )


def remove_workspace_approvals(workspace: Path, *, home: Path | None = None) -> bool:
    """Delete seeded files (and the directory when it ends up empty)."""

    workspace_dir = agent_project_dir(workspace, home=home)
    removed = False
    for name in (TRUSTED_FILENAME, APPROVALS_FILENAME):
        path = workspace_dir / name
        if path.exists():
            path.unlink()
            removed = True
    if workspace_dir.exists() and not any(workspace_dir.iterdir()):
        workspace_dir.rmdir()
    return removed


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _normalize_server_config(config: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    if "command" in config:
        normalized["command"] = config["command"]
        if "args" in config:
            normalized["args"] = config["args"]
        if "env" in config:
            normalized["env"] = config["env"]
    elif "url" in config:
        normalized["url"] = config["url"]
        if "headers" in config:
            normalized["headers"] = config["headers"]
    return normalized


def _read_mcp_servers(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.debug("Skipping MCP config %s: %s", path, error)
        return {}
    servers = payload.get("mcpServers") if isinstance(payload, dict) else None
    return servers if isinstance(servers, dict) else {}


def _read_existing_approvals(path: Path) -> list[str]:
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.debug("Starting fresh approvals list, %s unreadable: %s", path, error)
        return []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, str)]
