"""Registry of in-flight agent processes with stale and orphan sweeps.

The manager is owned by the runtime context.  ``start()`` launches one
background sweep task; ``shutdown()`` stops it and force-cleans everything
still registered.  Hosts call ``emergency_cleanup_all()`` from their own
signal handlers when the event loop cannot be awaited.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import psutil

from agent_bridge.orchestrator.backend.base import ProcessHandle

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_AGE_SECONDS = 600.0
DEFAULT_INACTIVITY_GRACE_SECONDS = 30.0
DEFAULT_ORPHAN_SCAN_INTERVAL_SECONDS = 60.0
DEFAULT_TERMINATION_GRACE_SECONDS = 2.0

_INIT_PIDS = frozenset({0, 1})


@dataclass(slots=True)
class LifecycleStats:
    active: int
    oldest_age_seconds: float | None
    sweeps: int
    stale_cleaned: int
    orphans_killed: int
    running: bool


class LifecycleManager:
    """Track registered handles and clean up after leaked agent processes."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        agent_name: str = "cursor-agent",
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        inactivity_grace_seconds: float = DEFAULT_INACTIVITY_GRACE_SECONDS,
        orphan_scan_interval_seconds: float = DEFAULT_ORPHAN_SCAN_INTERVAL_SECONDS,
        orphan_scan_enabled: bool = True,
        termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.agent_name = agent_name
        self.sweep_interval_seconds = sweep_interval_seconds
        self.max_age_seconds = max_age_seconds
        self.inactivity_grace_seconds = inactivity_grace_seconds
        self.orphan_scan_interval_seconds = orphan_scan_interval_seconds
        self.orphan_scan_enabled = orphan_scan_enabled
        self.termination_grace_seconds = termination_grace_seconds
        self._clock = clock
        self._handles: dict[int, ProcessHandle] = {}
        self._task: asyncio.Task[None] | None = None
        self._last_orphan_scan: float | None = None
        self._sweeps = 0
        self._stale_cleaned = 0
        self._orphans_killed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register(self, handle: ProcessHandle) -> None:
        self._handles[id(handle)] = handle
        logger.debug("Registered agent process pid=%s", handle.pid)

    def unregister(self, handle: ProcessHandle) -> None:
        self._handles.pop(id(handle), None)

    def touch(self, handle: ProcessHandle) -> None:
        handle.touch(self._clock())

    def handles(self) -> list[ProcessHandle]:
        return list(self._handles.values())

    def tracked_pids(self) -> set[int]:
        return {handle.pid for handle in self._handles.values() if handle.pid is not None}

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="agent-bridge-lifecycle-sweep")
        logger.info(
            "Lifecycle sweep started (interval=%.0fs, orphan_scan=%s)",
            self.sweep_interval_seconds,
            self.orphan_scan_enabled,
        )

    async def shutdown(self) -> int:
        """Stop the sweep task and force-clean every registered process."""

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        cleaned = self.emergency_cleanup_all()
        logger.info("Lifecycle manager shut down (cleaned=%d)", cleaned)
        return cleaned

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Lifecycle sweep failed")

    async def sweep(self) -> None:
        """One sweep: stale handles always, orphan scan when it is due."""

        self._sweeps += 1
        self.cleanup_stale()
        if not self.orphan_scan_enabled:
            return
        now = self._clock()
        if (
            self._last_orphan_scan is not None
            and now - self._last_orphan_scan < self.orphan_scan_interval_seconds
        ):
            return
        self._last_orphan_scan = now
        # Snapshot on the loop; the registry is not read from the worker thread.
        tracked = self.tracked_pids()
        await asyncio.to_thread(self.kill_orphans, tracked)

    def cleanup_stale(self) -> int:
        """Force-clean handles past max age or inactive beyond their timeout."""

        now = self._clock()
        stale: list[ProcessHandle] = []
        for handle in self._handles.values():
            age = now - handle.started_at
            idle = now - handle.last_activity_at
            inactivity_limit = handle.timeout_seconds + self.inactivity_grace_seconds
            if age > self.max_age_seconds or idle > inactivity_limit:
                stale.append(handle)

        for handle in stale:
            logger.warning(
                "Force-cleaning stale agent process pid=%s (age=%.0fs)",
                handle.pid,
                now - handle.started_at,
            )
            force_cleanup(handle)
            self.unregister(handle)
        self._stale_cleaned += len(stale)
        return len(stale)

    def find_orphans(self, tracked: set[int] | None = None) -> list[psutil.Process]:
        """Agent processes whose parent is gone or was reaped to init."""

        if tracked is None:
            tracked = self.tracked_pids()
        own_pid = os.getpid()
        orphans: list[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "ppid", "name", "cmdline"]):
            try:
                info = proc.info
                pid = info.get("pid")
                if pid in tracked or pid == own_pid:
                    continue
                if not _matches_agent(info.get("name"), info.get("cmdline"), self.agent_name):
                    continue
                ppid = info.get("ppid")
                if ppid is None:
                    continue
                if ppid in _INIT_PIDS or not psutil.pid_exists(ppid):
                    orphans.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return orphans

    def kill_orphans(self, tracked: set[int] | None = None) -> int:
        orphans = self.find_orphans(tracked)
        if not orphans:
            return 0

        for proc in orphans:
            logger.warning("Terminating orphaned agent process pid=%s", proc.pid)
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as error:
                logger.warning("Could not terminate pid=%s: %s", proc.pid, error)

        _gone, alive = psutil.wait_procs(orphans, timeout=self.termination_grace_seconds)
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as error:
                logger.warning("Could not kill pid=%s: %s", proc.pid, error)
        self._orphans_killed += len(orphans)
        return len(orphans)

    def emergency_cleanup_all(self) -> int:
        """Synchronously force-kill every registered process and drop temp files."""

        handles = list(self._handles.values())
        for handle in handles:
            force_cleanup(handle)
        self._handles.clear()
        if handles:
            logger.warning("Emergency cleanup killed %d agent processes", len(handles))
        return len(handles)

    def stats(self) -> LifecycleStats:
        now = self._clock()
        ages = [now - handle.started_at for handle in self._handles.values()]
        return LifecycleStats(
            active=len(self._handles),
            oldest_age_seconds=max(ages) if ages else None,
            sweeps=self._sweeps,
            stale_cleaned=self._stale_cleaned,
            orphans_killed=self._orphans_killed,
            running=self.running,
        )


def force_cleanup(handle: ProcessHandle) -> None:
    """Kill the process if alive and remove its prompt file."""

    handle.kill()
    handle.remove_prompt_file()
    handle.cleaned_up = True


def _matches_agent(name: object, cmdline: object, agent_name: str) -> bool:
    if isinstance(name, str) and name == agent_name:
        return True
    if not isinstance(cmdline, list):
        return False
    # Node-based agents run as ``node /path/to/<agent> ...``.
    return any(
        isinstance(part, str) and Path(part).name == agent_name for part in cmdline[:2]
    )
