from __future__ import annotations

import asyncio
import os
import threading
from pathlib import Path

import allure
import psutil

from agent_bridge.orchestrator.backend.base import ProcessHandle
from agent_bridge.orchestrator.lifecycle import LifecycleManager, force_cleanup
from agent_bridge.orchestrator.models import OperationKind

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Process Lifecycle"),
]


class _FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.kills = 0

    def kill(self) -> None:
        self.kills += 1
        self.returncode = -9


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class _FakePsProcess:
    def __init__(self, pid: int, ppid: int, name: str, cmdline: list[str]) -> None:
        self.pid = pid
        self.info = {"pid": pid, "ppid": ppid, "name": name, "cmdline": cmdline}
        self.terminated = False
        self.killed = False

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True


def _handle(
    *,
    pid: int,
    clock: _FakeClock,
    timeout_seconds: float = 120.0,
    prompt_file: Path | None = None,
) -> ProcessHandle:
    return ProcessHandle(
        operation=OperationKind.NORMAL,
        timeout_seconds=timeout_seconds,
        prompt_file=prompt_file,
        process=_FakeProcess(pid),  # type: ignore[arg-type]
        started_at=clock.now,
        last_activity_at=clock.now,
    )


def test_cleanup_stale_uses_max_age_and_inactivity(tmp_path: Path) -> None:
    clock = _FakeClock()
    manager = LifecycleManager(max_age_seconds=600, inactivity_grace_seconds=30, clock=clock)
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("hello", "utf-8")
    idle = _handle(pid=101, clock=clock, timeout_seconds=60, prompt_file=prompt_file)
    busy = _handle(pid=102, clock=clock, timeout_seconds=60)
    manager.register(idle)
    manager.register(busy)

    clock.now += 80
    manager.touch(busy)
    assert manager.cleanup_stale() == 0

    clock.now += 11
    assert manager.cleanup_stale() == 1
    assert idle.cleaned_up
    assert idle.process.kills == 1
    assert not prompt_file.exists()
    assert manager.handles() == [busy]

    clock.now += 600
    manager.touch(busy)
    assert manager.cleanup_stale() == 1
    assert manager.stats().stale_cleaned == 2
    assert manager.stats().active == 0


def test_find_orphans_skips_tracked_and_parented_processes(monkeypatch) -> None:
    clock = _FakeClock()
    manager = LifecycleManager(agent_name="cursor-agent", clock=clock)
    manager.register(_handle(pid=300, clock=clock))
    processes = [
        _FakePsProcess(200, 1, "cursor-agent", ["cursor-agent", "--print"]),
        _FakePsProcess(201, 999, "node", ["node", "/opt/bin/cursor-agent", "--print"]),
        _FakePsProcess(202, 500, "cursor-agent", ["cursor-agent"]),
        _FakePsProcess(203, 1, "bash", ["bash", "-c", "cursor-agent"]),
        _FakePsProcess(300, 1, "cursor-agent", ["cursor-agent"]),
        _FakePsProcess(os.getpid(), 1, "cursor-agent", ["cursor-agent"]),
    ]
    monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter(processes))
    monkeypatch.setattr(psutil, "pid_exists", lambda pid: pid == 500)

    orphans = manager.find_orphans()

    assert [proc.pid for proc in orphans] == [200, 201]


def test_kill_orphans_terminates_then_kills_survivors(monkeypatch) -> None:
    manager = LifecycleManager(termination_grace_seconds=0.1)
    stubborn = _FakePsProcess(200, 1, "cursor-agent", ["cursor-agent"])
    polite = _FakePsProcess(201, 1, "cursor-agent", ["cursor-agent"])
    monkeypatch.setattr(manager, "find_orphans", lambda tracked=None: [stubborn, polite])
    monkeypatch.setattr(
        psutil,
        "wait_procs",
        lambda procs, timeout=None: ([polite], [stubborn]),
    )

    assert manager.kill_orphans() == 2
    assert stubborn.terminated and stubborn.killed
    assert polite.terminated and not polite.killed
    assert manager.stats().orphans_killed == 2


def test_sweep_runs_orphan_scan_only_when_due(monkeypatch) -> None:
    clock = _FakeClock()
    manager = LifecycleManager(orphan_scan_interval_seconds=60, clock=clock)
    scans: list[float] = []
    monkeypatch.setattr(
        manager,
        "kill_orphans",
        lambda tracked=None: scans.append(clock.now) or 0,
    )

    asyncio.run(manager.sweep())
    clock.now += 30
    asyncio.run(manager.sweep())
    clock.now += 31
    asyncio.run(manager.sweep())

    assert scans == [1_000.0, 1_061.0]
    assert manager.stats().sweeps == 3


def test_sweep_reads_registry_on_the_event_loop_thread(monkeypatch) -> None:
    clock = _FakeClock()
    manager = LifecycleManager(agent_name="cursor-agent", clock=clock)
    manager.register(_handle(pid=300, clock=clock))
    reader_threads: list[int] = []
    original_tracked_pids = manager.tracked_pids

    def _tracked_pids() -> set[int]:
        reader_threads.append(threading.get_ident())
        return original_tracked_pids()

    scanned: list[set[int] | None] = []
    original_find_orphans = manager.find_orphans

    def _find_orphans(tracked: set[int] | None = None) -> list[psutil.Process]:
        scanned.append(tracked)
        return original_find_orphans(tracked)

    monkeypatch.setattr(manager, "tracked_pids", _tracked_pids)
    monkeypatch.setattr(manager, "find_orphans", _find_orphans)
    monkeypatch.setattr(
        psutil,
        "process_iter",
        lambda attrs=None: iter([_FakePsProcess(300, 1, "cursor-agent", ["cursor-agent"])]),
    )

    asyncio.run(manager.sweep())

    assert reader_threads == [threading.get_ident()]
    assert scanned == [{300}]
    assert manager.stats().orphans_killed == 0


def test_sweep_skips_orphan_scan_when_disabled(monkeypatch) -> None:
    manager = LifecycleManager(orphan_scan_enabled=False)
    scans: list[int] = []
    monkeypatch.setattr(manager, "kill_orphans", lambda tracked=None: scans.append(1) or 0)

    asyncio.run(manager.sweep())

    assert scans == []
    assert manager.stats().sweeps == 1


def test_emergency_cleanup_kills_everything_and_removes_prompt_files(tmp_path: Path) -> None:
    clock = _FakeClock()
    manager = LifecycleManager(clock=clock)
    files = []
    handles = []
    for index in range(3):
        prompt_file = tmp_path / f"prompt-{index}.txt"
        prompt_file.write_text("p", "utf-8")
        files.append(prompt_file)
        handle = _handle(pid=400 + index, clock=clock, prompt_file=prompt_file)
        handles.append(handle)
        manager.register(handle)

    assert manager.emergency_cleanup_all() == 3
    assert manager.handles() == []
    assert all(handle.process.kills == 1 for handle in handles)
    assert not any(path.exists() for path in files)


def test_force_cleanup_skips_finished_process() -> None:
    handle = _handle(pid=500, clock=_FakeClock())
    handle.process.returncode = 0

    force_cleanup(handle)

    assert handle.process.kills == 0
    assert handle.cleaned_up


def test_start_and_shutdown_manage_sweep_task() -> None:
    manager = LifecycleManager(sweep_interval_seconds=0.01, orphan_scan_enabled=False)

    async def scenario() -> tuple[bool, bool, int]:
        await manager.start()
        running = manager.running
        await asyncio.sleep(0.1)
        manager.register(
            ProcessHandle(
                operation=OperationKind.NORMAL,
                timeout_seconds=120.0,
                process=_FakeProcess(600),  # type: ignore[arg-type]
            ),
        )
        cleaned = await manager.shutdown()
        return running, manager.running, cleaned

    running, still_running, cleaned = asyncio.run(scenario())

    assert running
    assert not still_running
    assert cleaned == 1
    assert manager.stats().sweeps >= 1
