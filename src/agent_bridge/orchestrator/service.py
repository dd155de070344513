"""The ``generate`` contract: session lookup, execution, resume recovery."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from agent_bridge.orchestrator.backend.base import AgentBackend
from agent_bridge.orchestrator.backend.cli_backend import build_invocation_args
from agent_bridge.orchestrator.failure_classifier import (
    DEFAULT_RESUME_FAILURE_PATTERNS,
    classify_failure,
    matches_resume_failure,
    outcome_text,
)
from agent_bridge.orchestrator.models import (
    ExecutionFailure,
    ExecutionOutcome,
    FailureKind,
    GenerationError,
    GenerationRequest,
    GenerationResult,
    OutputMode,
    ResultRecord,
)
from agent_bridge.orchestrator.output_fallback import recover_json_object, with_object_instruction
from agent_bridge.orchestrator.pricing import estimate_cost_usd
from agent_bridge.orchestrator.progress import PhaseTracker
from agent_bridge.orchestrator.session_store import SessionStore

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 500


class GenerationService:
    """Run one generation per call, resuming the cached agent session when possible."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        store_for: Callable[[Path], SessionStore],
        executable: str = "cursor-agent",
        default_model: str | None = None,
        api_key: str | None = None,
        with_diffs: bool = False,
        extra_args: str = "",
        model_flag: str = "--model",
        resume_failure_patterns: tuple[str, ...] = DEFAULT_RESUME_FAILURE_PATTERNS,
        transient_exit_codes: tuple[int, ...] = (),
        approvals: Callable[[Path], object] | None = None,
    ) -> None:
        self.backend = backend
        self.store_for = store_for
        self.executable = executable
        self.default_model = default_model
        self.api_key = api_key
        self.with_diffs = with_diffs
        self.extra_args = extra_args
        self.model_flag = model_flag
        self.resume_failure_patterns = resume_failure_patterns
        self.transient_exit_codes = transient_exit_codes
        self.approvals = approvals
        self._approved_roots: set[Path] = set()

    def build_args(self, *, model: str | None, resume_chat_id: str | None) -> list[str]:
        return build_invocation_args(
            executable=self.executable,
            model=model,
            resume_chat_id=resume_chat_id,
            api_key=self.api_key,
            with_diffs=self.with_diffs,
            extra_args=self.extra_args,
            model_flag=self.model_flag,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Execute ``request`` and return text or object plus usage and session id.

        Raises ``GenerationError`` carrying the final failure; a refused
        resume is retried once without the resume directive and never surfaces.
        """

        tracker = PhaseTracker(request.progress)
        tracker.advance()

        model = request.model or self.default_model
        project_root = Path(request.project_root).resolve()
        store = self.store_for(project_root)
        key = SessionStore.context_key(project_root, model)
        cached_chat_id = store.get(key)
        self._ensure_approvals(project_root)

        prompt = request.prompt
        if request.output_mode is OutputMode.OBJECT:
            prompt = with_object_instruction(prompt)

        tracker.advance(detail="resuming session" if cached_chat_id else "new session")
        outcome = await self._execute(request, prompt, model=model, resume_chat_id=cached_chat_id)

        retried = False
        if cached_chat_id is not None and self._is_resume_failure(outcome):
            dropped = store.mark_resume_failure(key, cached_chat_id)
            logger.info(
                "Agent refused to resume session %s for %s (dropped=%s); retrying fresh",
                cached_chat_id,
                key,
                dropped,
            )
            tracker.note("session could not be resumed, starting fresh")
            outcome = await self._execute(request, prompt, model=model, resume_chat_id=None)
            retried = True

        tracker.advance("Generating response")
        record = self._require_success(outcome)

        if record.session_id:
            store.put(key, record.session_id, is_new=cached_chat_id is None or retried)

        text, structured = self._shape(record, request.output_mode)
        cost_usd = estimate_cost_usd(model=model, usage=record.usage)
        tracker.advance("Finalizing")
        tracker.complete(record.usage, cost_usd)
        logger.info(
            "Generation done for %s (session=%s, tokens=%d, retried=%s, partial=%s)",
            key,
            record.session_id,
            record.usage.total_tokens,
            retried,
            record.partial,
        )
        return GenerationResult(
            text=text,
            structured=structured,
            usage=record.usage,
            session_id=record.session_id,
            cost_usd=cost_usd,
            retried_without_resume=retried,
            partial=record.partial,
        )

    async def _execute(
        self,
        request: GenerationRequest,
        prompt: str,
        *,
        model: str | None,
        resume_chat_id: str | None,
    ) -> ExecutionOutcome:
        args = self.build_args(model=model, resume_chat_id=resume_chat_id)
        return await self.backend.execute(
            args,
            prompt,
            operation=request.operation,
            cwd=Path(request.project_root).resolve(),
            model=model,
        )

    def _is_resume_failure(self, outcome: ExecutionOutcome) -> bool:
        if isinstance(outcome, ResultRecord) and not outcome.is_error:
            return False
        pattern = matches_resume_failure(
            outcome_text(outcome),
            patterns=self.resume_failure_patterns,
        )
        return pattern is not None

    def _require_success(self, outcome: ExecutionOutcome) -> ResultRecord:
        if isinstance(outcome, ResultRecord) and not outcome.is_error:
            return outcome

        if isinstance(outcome, ResultRecord):
            failure = ExecutionFailure(
                kind=FailureKind.UPSTREAM_ERROR,
                message=outcome.result_text or "Agent reported an error without details",
                diagnostics=outcome.diagnostics,
            )
        else:
            failure = outcome

        classification = classify_failure(failure, transient_exit_codes=self.transient_exit_codes)
        logger.warning(
            "Generation failed: %s (%s)",
            failure.message,
            classification.to_details(),
        )
        raise GenerationError(failure, transient=classification.transient)

    def _shape(self, record: ResultRecord, mode: OutputMode) -> tuple[str | None, object]:
        if mode is OutputMode.TEXT:
            return record.result_text, None

        if isinstance(record.result, dict | list):
            return None, record.result
        structured = recover_json_object(record.result_text)
        if structured is None:
            failure = ExecutionFailure(
                kind=FailureKind.PARSE_FAILURE,
                message="Agent result does not contain a JSON object",
                diagnostics=record.diagnostics,
                output_preview=record.result_text[:_PREVIEW_CHARS],
            )
            raise GenerationError(failure, transient=False)
        return None, structured

    def _ensure_approvals(self, project_root: Path) -> None:
        if self.approvals is None or project_root in self._approved_roots:
            return
        self.approvals(project_root)
        self._approved_roots.add(project_root)
