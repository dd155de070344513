"""Subprocess-based execution engine for the CLI agent.

The process exit is not a completion signal: the agent may linger after its
final ``result`` event.  stdout is consumed chunk by chunk and the buffer is
parsed once the completion marker shows up (after a short settle delay so the
rest of the event can arrive).  Exit without a live marker gets one final
parse of the whole buffer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from agent_bridge.orchestrator.backend.base import ProcessHandle
from agent_bridge.orchestrator.models import (
    ExecutionFailure,
    ExecutionOutcome,
    FailureKind,
    OperationKind,
    ResultRecord,
)
from agent_bridge.orchestrator.stream_parser import (
    ParseFailure,
    extract_assistant_text,
    has_result_marker,
    parse_agent_output,
)

if TYPE_CHECKING:
    from agent_bridge.orchestrator.lifecycle import LifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_RESEARCH_TIMEOUT_SECONDS = 300.0
DEFAULT_SETTLE_DELAY_SECONDS = 0.2
DEFAULT_RESEARCH_SETTLE_DELAY_SECONDS = 1.0
DEFAULT_TERMINATION_GRACE_SECONDS = 2.0

OPERATION_ENV = "AGENT_BRIDGE_OPERATION"
MODEL_ENV = "AGENT_BRIDGE_MODEL"

_READ_CHUNK_BYTES = 64 * 1024
_MARKER_OVERLAP_BYTES = 64
_STDERR_TAIL_BYTES = 4_000
_STDERR_DRAIN_SECONDS = 1.0
_PREVIEW_CHARS = 500


def build_invocation_args(  # noqa: PLR0913
    *,
    executable: str,
    model: str | None,
    resume_chat_id: str | None = None,
    api_key: str | None = None,
    with_diffs: bool = False,
    extra_args: str = "",
    model_flag: str = "--model",
) -> list[str]:
    """Build the non-interactive agent command line."""

    head = shlex.split(executable.strip())
    if not head:
        raise ValueError("Agent executable is empty.")

    args = [*head, "--print", "--output-format", "stream-json"]
    if with_diffs:
        args.append("--with-diffs")
    if resume_chat_id:
        args.extend(["--resume", resume_chat_id])
    if api_key:
        args.extend(["--api-key", api_key])
    args.extend(shlex.split(extra_args))
    if model:
        if model_flag:
            args.extend([model_flag, model])
        else:
            args.append(model)
    return args


class CliAgentBackend:
    """Run the agent once per call with timeout and guaranteed cleanup."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        lifecycle: LifecycleManager | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        research_timeout_seconds: float = DEFAULT_RESEARCH_TIMEOUT_SECONDS,
        settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS,
        research_settle_delay_seconds: float = DEFAULT_RESEARCH_SETTLE_DELAY_SECONDS,
        termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS,
        temp_dir: Path | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.timeout_seconds = timeout_seconds
        self.research_timeout_seconds = research_timeout_seconds
        self.settle_delay_seconds = settle_delay_seconds
        self.research_settle_delay_seconds = research_settle_delay_seconds
        self.termination_grace_seconds = termination_grace_seconds
        self.temp_dir = temp_dir

    def timeout_for(self, operation: OperationKind) -> float:
        if operation is OperationKind.RESEARCH:
            return self.research_timeout_seconds
        return self.timeout_seconds

    def settle_delay_for(self, operation: OperationKind) -> float:
        if operation is OperationKind.RESEARCH:
            return self.research_settle_delay_seconds
        return self.settle_delay_seconds

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
        if not args:
            raise ValueError("Invocation args must not be empty.")

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_for(operation)
        handle = ProcessHandle(operation=operation, timeout_seconds=timeout)
        try:
            try:
                handle.prompt_file = _write_prompt_file(prompt_text, temp_dir=self.temp_dir)
            except OSError as error:
                return ExecutionFailure(
                    kind=FailureKind.SPAWN_FAILURE,
                    message=f"Failed to write prompt file: {error}",
                )

            env = os.environ.copy()
            env[OPERATION_ENV] = operation.value
            env[MODEL_ENV] = model or "default"
            try:
                with handle.prompt_file.open("rb") as stdin_handle:
                    handle.process = await asyncio.create_subprocess_exec(
                        *args,
                        stdin=stdin_handle,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        cwd=str(cwd) if cwd is not None else None,
                        env=env,
                    )
            except FileNotFoundError:
                return ExecutionFailure(
                    kind=FailureKind.SPAWN_FAILURE,
                    message=f"Agent executable not found: {args[0]}",
                )
            except OSError as error:
                return ExecutionFailure(
                    kind=FailureKind.SPAWN_FAILURE,
                    message=f"Agent failed to start: {error}",
                )

            if self.lifecycle is not None:
                self.lifecycle.register(handle)
            logger.info(
                "Agent started pid=%s operation=%s timeout=%.0fs",
                handle.pid,
                operation.value,
                timeout,
            )

            try:
                return await asyncio.wait_for(self._stream(handle), timeout=timeout)
            except TimeoutError:
                handle.resolved = True
                logger.warning("Agent pid=%s timed out after %.1fs", handle.pid, timeout)
                await self._terminate(handle)
                return ExecutionFailure(
                    kind=FailureKind.TIMEOUT,
                    message=f"Agent did not produce a result within {timeout:g}s",
                )
        finally:
            await self.cleanup(handle)

    async def cleanup(self, handle: ProcessHandle) -> None:
        """Kill if alive, remove the prompt file, unregister; safe to repeat."""

        if self.lifecycle is not None:
            self.lifecycle.unregister(handle)
        if handle.cleaned_up:
            return
        handle.cleaned_up = True
        if handle.kill() and handle.process is not None:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    handle.process.wait(),
                    timeout=self.termination_grace_seconds,
                )
        handle.remove_prompt_file()
        logger.debug("Cleaned up agent pid=%s", handle.pid)

    async def _stream(self, handle: ProcessHandle) -> ExecutionOutcome:
        process = handle.process
        if process is None or process.stdout is None or process.stderr is None:
            raise RuntimeError("Agent process was not started with piped output.")

        research = handle.operation is OperationKind.RESEARCH
        settle_delay = self.settle_delay_for(handle.operation)
        stdout = bytearray()
        stderr_tail = bytearray()
        marker_seen = asyncio.Event()

        pump = asyncio.create_task(self._pump_stdout(handle, stdout, marker_seen))
        drain = asyncio.create_task(_drain_tail(process.stderr, stderr_tail))
        marker_wait = asyncio.create_task(marker_seen.wait())
        try:
            while True:
                done, _pending = await asyncio.wait(
                    {pump, marker_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if marker_wait not in done:
                    break
                await asyncio.sleep(settle_delay)
                parsed = parse_agent_output(bytes(stdout), research=research)
                if isinstance(parsed, ResultRecord) and not handle.resolved:
                    handle.resolved = True
                    logger.info(
                        "Result received from pid=%s (strategy=%s, chars=%d)",
                        handle.pid,
                        parsed.strategy,
                        len(stdout),
                    )
                    return parsed
                if pump.done():
                    break
                # Marker seen but the event is still incomplete; wait for more output.
                marker_seen.clear()
                marker_wait = asyncio.create_task(marker_seen.wait())

            pump.result()
            returncode = await process.wait()
            await asyncio.wait({drain}, timeout=_STDERR_DRAIN_SECONDS)
            handle.resolved = True
            return _outcome_after_exit(
                bytes(stdout),
                returncode=returncode,
                stderr_tail=bytes(stderr_tail),
                research=research,
            )
        finally:
            tasks = (pump, drain, marker_wait)
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _pump_stdout(
        self,
        handle: ProcessHandle,
        buffer: bytearray,
        marker_seen: asyncio.Event,
    ) -> None:
        if handle.process is None or handle.process.stdout is None:
            raise RuntimeError("Agent process was not started with piped output.")
        stream = handle.process.stdout
        marker_found = False
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            scan_from = max(0, len(buffer) - _MARKER_OVERLAP_BYTES)
            buffer.extend(chunk)
            if self.lifecycle is not None:
                self.lifecycle.touch(handle)
            else:
                handle.touch()
            if not marker_found:
                window = bytes(buffer[scan_from:]).decode("utf-8", errors="replace")
                marker_found = has_result_marker(window)
            if marker_found:
                marker_seen.set()

    async def _terminate(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.termination_grace_seconds)
        except TimeoutError:
            logger.warning("Agent pid=%s ignored SIGTERM; killing", handle.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=self.termination_grace_seconds)


def _outcome_after_exit(
    stdout: bytes,
    *,
    returncode: int,
    stderr_tail: bytes,
    research: bool,
) -> ExecutionOutcome:
    parsed = parse_agent_output(stdout, research=research)
    if isinstance(parsed, ResultRecord):
        return parsed

    stderr_text = stderr_tail.decode("utf-8", errors="replace").strip()
    preview = _failure_preview(stdout, parsed)
    if returncode != 0:
        return ExecutionFailure(
            kind=FailureKind.PROCESS_EXIT,
            message=f"Agent exited with code {returncode} without a result",
            diagnostics=parsed.diagnostics,
            exit_code=returncode,
            stderr_tail=stderr_text,
            output_preview=preview,
        )
    return ExecutionFailure(
        kind=FailureKind.PARSE_FAILURE,
        message=f"Agent exited without a parseable result: {parsed.reason}",
        diagnostics=parsed.diagnostics,
        exit_code=returncode,
        stderr_tail=stderr_text,
        output_preview=preview,
    )


def _failure_preview(stdout: bytes, parsed: ParseFailure) -> str:
    transcript = extract_assistant_text(stdout)
    if transcript.chunks:
        return transcript.text[-_PREVIEW_CHARS:]
    return parsed.preview


async def _drain_tail(stream: asyncio.StreamReader, tail: bytearray) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        tail.extend(chunk)
        if len(tail) > _STDERR_TAIL_BYTES:
            del tail[:-_STDERR_TAIL_BYTES]


def _write_prompt_file(prompt_text: str, *, temp_dir: Path | None) -> Path:
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        prefix="agent-bridge-prompt-",
        suffix=".txt",
        dir=temp_dir,
        delete=False,
    ) as handle:
        handle.write(prompt_text)
    return Path(handle.name)
