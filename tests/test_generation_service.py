from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import pytest

from agent_bridge.agent_runtime import BridgeRuntime
from agent_bridge.config import Settings
from agent_bridge.orchestrator.models import (
    Diagnostics,
    ExecutionFailure,
    ExecutionOutcome,
    FailureKind,
    GenerationError,
    GenerationRequest,
    OperationKind,
    OutputMode,
    ResultRecord,
    TokenUsage,
)
from agent_bridge.orchestrator.output_fallback import OBJECT_INSTRUCTION
from agent_bridge.orchestrator.progress import RecordingProgress
from agent_bridge.orchestrator.service import GenerationService
from agent_bridge.orchestrator.session_store import SessionStore, store_path_for

pytestmark = [
    allure.epic("Session Continuity"),
    allure.feature("Generation Service"),
]


class _StubBackend:
    def __init__(self, *outcomes: ExecutionOutcome) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, object]] = []

    async def execute(self, args, prompt_text, **kwargs) -> ExecutionOutcome:
        self.calls.append({"args": list(args), "prompt": prompt_text, **kwargs})
        return self.outcomes.pop(0)


def _record(
    result: object,
    *,
    session_id: str | None = "S1",
    is_error: bool = False,
) -> ResultRecord:
    return ResultRecord(
        result=result,
        is_error=is_error,
        usage=TokenUsage(input_tokens=7, output_tokens=3, total_tokens=10, estimated=False),
        session_id=session_id,
    )


def _service(
    backend: _StubBackend,
    **kwargs,
) -> tuple[GenerationService, dict[Path, SessionStore]]:
    stores: dict[Path, SessionStore] = {}

    def store_for(root: Path) -> SessionStore:
        return stores.setdefault(root, SessionStore.for_project(root))

    kwargs.setdefault("executable", "cursor-agent")
    return GenerationService(backend=backend, store_for=store_for, **kwargs), stores


def _request(root: Path, prompt: str = "hi", **kwargs) -> GenerationRequest:
    kwargs.setdefault("model", "m1")
    return GenerationRequest(prompt=prompt, project_root=root, **kwargs)


def test_fresh_generation_caches_session(project_root: Path) -> None:
    backend = _StubBackend(_record("hello", session_id="S1"))
    service, stores = _service(backend)

    result = asyncio.run(service.generate(_request(project_root)))

    assert result.text == "hello"
    assert result.session_id == "S1"
    assert result.retried_without_resume is False
    assert "--resume" not in backend.calls[0]["args"]
    assert backend.calls[0]["cwd"] == project_root.resolve()
    key = f"{project_root.resolve()}:m1"
    entry = stores[project_root.resolve()].entry(key)
    assert entry is not None
    assert entry.chatId == "S1"
    assert entry.resumeAttempts == 0
    persisted = json.loads(store_path_for(project_root).read_text("utf-8"))
    assert persisted[key]["chatId"] == "S1"


def test_cached_session_is_resumed(project_root: Path) -> None:
    backend = _StubBackend(_record("first", session_id="S1"), _record("second", session_id="S1"))
    service, _stores = _service(backend)

    asyncio.run(service.generate(_request(project_root)))
    result = asyncio.run(service.generate(_request(project_root)))

    args = backend.calls[1]["args"]
    assert args[args.index("--resume") + 1] == "S1"
    assert result.text == "second"
    assert result.retried_without_resume is False


def test_refused_resume_is_retried_once_without_resume(project_root: Path) -> None:
    key = SessionStore.context_key(project_root, "m1")
    SessionStore.for_project(project_root).put(key, "S1")
    backend = _StubBackend(
        _record("Error: session expired", session_id="S1", is_error=True),
        _record("fresh answer", session_id="S2"),
    )
    service, stores = _service(backend)

    result = asyncio.run(service.generate(_request(project_root)))

    assert result.text == "fresh answer"
    assert result.session_id == "S2"
    assert result.retried_without_resume is True
    assert len(backend.calls) == 2
    assert "--resume" in backend.calls[0]["args"]
    assert "--resume" not in backend.calls[1]["args"]
    entry = stores[project_root.resolve()].entry(key)
    assert entry.chatId == "S2"
    assert entry.resumeAttempts == 0


def test_resume_failure_detected_in_process_exit_stderr(project_root: Path) -> None:
    key = SessionStore.context_key(project_root, "m1")
    SessionStore.for_project(project_root).put(key, "S1")
    backend = _StubBackend(
        ExecutionFailure(
            kind=FailureKind.PROCESS_EXIT,
            message="Agent exited with code 1 without a result",
            exit_code=1,
            stderr_tail="Could not resume chat S1",
        ),
        _record("ok", session_id="S3"),
    )
    service, _stores = _service(backend)

    result = asyncio.run(service.generate(_request(project_root)))

    assert result.retried_without_resume is True
    assert result.session_id == "S3"


def test_configured_resume_pattern_triggers_retry(project_root: Path) -> None:
    key = SessionStore.context_key(project_root, "m1")
    SessionStore.for_project(project_root).put(key, "S1")
    backend = _StubBackend(
        _record("Error: the thread is gone", is_error=True),
        _record("ok", session_id="S4"),
    )
    service, _stores = _service(backend, resume_failure_patterns=("thread is gone",))

    result = asyncio.run(service.generate(_request(project_root)))

    assert result.retried_without_resume is True


def test_resume_error_without_cached_session_is_not_retried(project_root: Path) -> None:
    backend = _StubBackend(_record("Error: session expired", is_error=True))
    service, _stores = _service(backend)

    with pytest.raises(GenerationError) as raised:
        asyncio.run(service.generate(_request(project_root)))

    assert raised.value.kind is FailureKind.UPSTREAM_ERROR
    assert len(backend.calls) == 1


def test_timeout_surfaces_as_transient_generation_error(project_root: Path) -> None:
    backend = _StubBackend(ExecutionFailure(kind=FailureKind.TIMEOUT, message="too slow"))
    service, stores = _service(backend)

    with pytest.raises(GenerationError) as raised:
        asyncio.run(service.generate(_request(project_root)))

    assert raised.value.kind is FailureKind.TIMEOUT
    assert raised.value.transient is True
    assert len(stores[project_root.resolve()]) == 0


def test_upstream_error_record_is_classified(project_root: Path) -> None:
    record = ResultRecord(
        result="",
        is_error=True,
        usage=TokenUsage(),
        diagnostics=Diagnostics(errors=("Error: quota exceeded",)),
    )
    service, _stores = _service(_StubBackend(record))

    with pytest.raises(GenerationError) as raised:
        asyncio.run(service.generate(_request(project_root)))

    assert raised.value.kind is FailureKind.UPSTREAM_ERROR
    assert raised.value.transient is False
    assert raised.value.failure.message == "Agent reported an error without details"


def test_object_mode_returns_structured_value(project_root: Path) -> None:
    backend = _StubBackend(
        _record({"colors": ["red"]}),
        _record('Sure!\n```json\n{"colors": ["blue"]}\n```'),
    )
    service, _stores = _service(backend)

    direct = asyncio.run(service.generate(_request(project_root, output_mode=OutputMode.OBJECT)))
    fenced = asyncio.run(service.generate(_request(project_root, output_mode=OutputMode.OBJECT)))

    assert direct.structured == {"colors": ["red"]}
    assert direct.text is None
    assert fenced.structured == {"colors": ["blue"]}
    assert backend.calls[0]["prompt"].endswith(OBJECT_INSTRUCTION)


def test_object_mode_without_json_is_a_parse_failure(project_root: Path) -> None:
    service, _stores = _service(_StubBackend(_record("plain prose only")))

    with pytest.raises(GenerationError) as raised:
        asyncio.run(service.generate(_request(project_root, output_mode=OutputMode.OBJECT)))

    assert raised.value.kind is FailureKind.PARSE_FAILURE


def test_text_mode_renders_decoded_containers_as_json(project_root: Path) -> None:
    service, _stores = _service(_StubBackend(_record([1, 2, 3])))

    result = asyncio.run(service.generate(_request(project_root)))

    assert result.text == "[1, 2, 3]"


def test_progress_phases_and_usage_are_reported(project_root: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_BRIDGE_PRICING", "m1:1.0:1.0")
    progress = RecordingProgress()
    service, _stores = _service(_StubBackend(_record("done")))

    result = asyncio.run(service.generate(_request(project_root, progress=progress)))

    labels = [label for _fraction, label in progress.updates]
    assert labels[0] == "Starting agent"
    assert labels[1] == "Processing request: new session"
    assert "Generating response" in labels
    assert "Finalizing" in labels
    assert labels[-1] == "Completed (7/3 tokens, $0.0000)"
    assert progress.updates[-1][0] == 1.0
    fractions = [fraction for fraction, _label in progress.updates]
    assert fractions == sorted(fractions)
    assert progress.usage == result.usage
    assert result.cost_usd == pytest.approx(10 / 1_000_000)


def test_default_model_and_operation_are_forwarded(project_root: Path) -> None:
    backend = _StubBackend(_record("ok"))
    service, stores = _service(backend, default_model="m-default")

    asyncio.run(
        service.generate(_request(project_root, model=None, operation=OperationKind.RESEARCH)),
    )

    args = backend.calls[0]["args"]
    assert args[args.index("--model") + 1] == "m-default"
    assert backend.calls[0]["operation"] is OperationKind.RESEARCH
    assert f"{project_root.resolve()}:m-default" in stores[project_root.resolve()]


def test_approvals_are_seeded_once_per_project(project_root: Path) -> None:
    seeded: list[Path] = []
    backend = _StubBackend(_record("a"), _record("b"))
    service, _stores = _service(backend, approvals=seeded.append)

    asyncio.run(service.generate(_request(project_root)))
    asyncio.run(service.generate(_request(project_root)))

    assert seeded == [project_root.resolve()]


def test_runtime_end_to_end_with_echo_agent(project_root: Path, echo_agent_env) -> None:
    echo_agent_env("--session-id", "S-e2e")

    async def scenario():
        async with BridgeRuntime(Settings.from_env()) as runtime:
            first = await runtime.generate(_request(project_root, prompt="ping"))
            second = await runtime.generate(_request(project_root, prompt="pong"))
            return first, second, runtime.lifecycle.handles()

    first, second, handles = asyncio.run(scenario())

    assert first.text == "echo: ping"
    assert first.session_id == "S-e2e"
    assert second.text == "echo: pong"
    assert second.retried_without_resume is False
    assert handles == []
    stored = SessionStore.for_project(project_root).entry(f"{project_root.resolve()}:m1")
    assert stored.chatId == "S-e2e"


def test_runtime_recovers_from_expired_session_with_echo_agent(
    project_root: Path,
    echo_agent_env,
) -> None:
    echo_agent_env("--expired-sessions", "S-old")
    key = SessionStore.context_key(project_root, "m1")
    SessionStore.for_project(project_root).put(key, "S-old")

    async def scenario():
        async with BridgeRuntime(Settings.from_env()) as runtime:
            return await runtime.generate(_request(project_root, prompt="again"))

    result = asyncio.run(scenario())

    assert result.text == "echo: again"
    assert result.session_id == "echo-session"
    assert result.retried_without_resume is True
    assert SessionStore.for_project(project_root).entry(key).chatId == "echo-session"
