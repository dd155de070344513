"""CLI entrypoint for agent-bridge."""

import logging
import sys
from pathlib import Path

import rich_click as click

from agent_bridge import __version__
from agent_bridge.orchestrator.controllers import (
    ApprovalsCommand,
    BridgeCliController,
    DoctorCommand,
    GenerateCommand,
    SessionsCommand,
    SessionsForgetCommand,
)
from agent_bridge.orchestrator.models import OperationKind, OutputMode

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BridgeCliController()

_PROJECT_ROOT_OPTION = click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Project whose session store and workspace approvals are used.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-bridge")
@click.option("--verbose", "-v", is_flag=True, help="Log lifecycle details to stderr.")
def agent_bridge(verbose: bool) -> None:
    """Drive an interactive CLI AI agent as a batch backend."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@agent_bridge.command("generate")
@click.argument("prompt", required=False)
@_PROJECT_ROOT_OPTION
@click.option("--model", default=None, help="Model id; defaults to AGENT_BRIDGE_DEFAULT_MODEL.")
@click.option(
    "--operation",
    type=click.Choice([kind.value for kind in OperationKind], case_sensitive=False),
    default=OperationKind.NORMAL.value,
    show_default=True,
    help="`research` selects the longer timeout and partial-result recovery.",
)
@click.option(
    "--output",
    "output_mode",
    type=click.Choice([mode.value for mode in OutputMode], case_sensitive=False),
    default=OutputMode.TEXT.value,
    show_default=True,
    help="`object` requests and returns a JSON object.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the configured timeout for this invocation.",
)
@click.option("--show-meta", is_flag=True, help="Print session id, usage and cost as well.")
def generate(  # noqa: PLR0913
    prompt: str | None,
    project_root: Path,
    model: str | None,
    operation: str,
    output_mode: str,
    timeout_seconds: float | None,
    show_meta: bool,
) -> None:
    """Run one generation. Reads the prompt from stdin when not given."""

    text = prompt if prompt is not None else click.get_text_stream("stdin").read()
    if not text.strip():
        raise click.UsageError("Prompt is empty.")
    result = CONTROLLER.generate(
        GenerateCommand(
            prompt=text,
            project_root=project_root,
            model=model,
            operation=OperationKind(operation.lower()),
            output_mode=OutputMode(output_mode.lower()),
            timeout_seconds=timeout_seconds,
            show_meta=show_meta,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Generation failed.")


@agent_bridge.command("doctor")
@_PROJECT_ROOT_OPTION
@click.option("--model", default=None, help="Model for the synthetic run.")
@click.option("--run", is_flag=True, help="Also run one synthetic generation.")
@click.option(
    "--prompt",
    default="Reply with exactly: OK",
    show_default=True,
    help="Synthetic prompt used for the run check.",
)
@click.option(
    "--expect-substring",
    default="OK",
    show_default=True,
    help="Substring required in the result for a successful run check.",
)
@click.option(
    "--probe-timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=5.0,
    show_default=True,
)
def doctor(  # noqa: PLR0913
    project_root: Path,
    model: str | None,
    run: bool,
    prompt: str,
    expect_substring: str,
    probe_timeout_seconds: float,
) -> None:
    """Check agent availability, session store and workspace approvals."""

    result = CONTROLLER.doctor(
        DoctorCommand(
            project_root=project_root,
            model=model,
            run=run,
            prompt=prompt,
            expect_substring=expect_substring,
            probe_timeout_seconds=probe_timeout_seconds,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Doctor check failed.")


@agent_bridge.group()
def sessions() -> None:
    """Session continuity store commands."""


@sessions.command("stats")
@_PROJECT_ROOT_OPTION
def sessions_stats(project_root: Path) -> None:
    """Show cached sessions of a project."""

    _emit_lines(CONTROLLER.sessions_stats(SessionsCommand(project_root=project_root)))


@sessions.command("clear")
@_PROJECT_ROOT_OPTION
def sessions_clear(project_root: Path) -> None:
    """Drop every cached session of a project."""

    _emit_lines(CONTROLLER.sessions_clear(SessionsCommand(project_root=project_root)))


@sessions.command("cleanup-failed")
@_PROJECT_ROOT_OPTION
def sessions_cleanup_failed(project_root: Path) -> None:
    """Drop sessions that failed to resume at least once."""

    _emit_lines(CONTROLLER.sessions_cleanup_failed(SessionsCommand(project_root=project_root)))


@sessions.command("forget")
@_PROJECT_ROOT_OPTION
@click.option("--model", default=None, help="Model of the session; `default` when omitted.")
def sessions_forget(project_root: Path, model: str | None) -> None:
    """Drop the cached session of one (project, model) context."""

    _emit_lines(
        CONTROLLER.sessions_forget(SessionsForgetCommand(project_root=project_root, model=model)),
    )


@agent_bridge.group()
def approvals() -> None:
    """Agent workspace trust and MCP approval commands."""


@approvals.command("ensure")
@_PROJECT_ROOT_OPTION
def approvals_ensure(project_root: Path) -> None:
    """Pre-seed workspace trust and MCP approvals for a project."""

    result = CONTROLLER.approvals_ensure(ApprovalsCommand(project_root=project_root))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Approval seeding failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_bridge()
