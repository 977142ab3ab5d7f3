"""Async workflow engine: provider fan-out, mapping and downstream steps.

Each provider call is wrapped in ``asyncio.wait_for``, classified on
failure, retried with exponential backoff and gated by a circuit breaker.
A failing provider degrades only its own slot.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from quorum.analysis.engine import build_structural_brief, compute_structural_analysis
from quorum.config import Config
from quorum.errors import (
    DEFAULT_RATE_LIMIT_WAIT_MS,
    RATE_LIMIT,
    UNKNOWN,
    ClassifiedError,
    InvalidRequestError,
    ProviderExhaustedError,
    WorkflowError,
    circuit_open_error,
    classify_error,
    input_too_long_error,
)
from quorum.events import (
    TURN_CREATED,
    TURN_FINALIZED,
    WORKFLOW_COMPLETE,
    WORKFLOW_PARTIAL_COMPLETE,
    WORKFLOW_PROGRESS,
    WORKFLOW_STEP_UPDATE,
    MessageBus,
    WorkflowMessage,
)
from quorum.health import CircuitBreaker
from quorum.models.base import ProviderResult
from quorum.models.registry import ProviderRegistry
from quorum.session import AiTurn, ProviderResponse, Session, now_iso
from quorum.store import SessionStore
from quorum.workflow.compiler import (
    AntagonistStep,
    CompiledWorkflow,
    GauntletStep,
    MappingStep,
    PromptStep,
    RefinerStep,
    UnderstandStep,
)
from quorum.workflow.context import RecomputeContext
from quorum.workflow.mapper import build_mapping_prompt, extract_artifact, extract_narrative
from quorum.workflow.personas import (
    build_antagonist_prompt,
    build_gauntlet_prompt,
    build_refiner_prompt,
    build_understand_prompt,
)

logger = logging.getLogger(__name__)


@dataclass
class CallOutcome:
    provider_id: str
    result: ProviderResult | None = None
    error: ClassifiedError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None

    @property
    def text(self) -> str:
        return self.result.text if self.result else ""


@dataclass
class WorkflowResult:
    workflow_id: str
    session_id: str
    turn_id: str
    status: str
    final_results: Dict[str, Dict[str, str]] = field(default_factory=dict)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    artifact: Dict[str, Any] | None = None
    successful_providers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "session_id": self.session_id,
            "turn_id": self.turn_id,
            "status": self.status,
            "final_results": self.final_results,
            "failed": self.failed,
            "artifact": self.artifact,
            "successful_providers": self.successful_providers,
        }


@dataclass
class _Run:
    workflow: CompiledWorkflow
    session: Session
    turn: AiTurn
    result: WorkflowResult
    prompt_ran: bool = False
    mapping_completed: bool = False

    def fail(self, step_id: str, outcome: CallOutcome) -> None:
        self.result.failed.append({
            "step_id": step_id,
            "provider_id": outcome.provider_id,
            "error": outcome.error.to_dict() if outcome.error else None,
        })

    def succeed(self, step_id: str, outcome: CallOutcome) -> None:
        self.result.final_results.setdefault(step_id, {})[outcome.provider_id] = outcome.text


class WorkflowEngine:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: SessionStore | None = None,
        bus: MessageBus | None = None,
        breaker: CircuitBreaker | None = None,
        timeout: float = 120.0,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        retry_backoff: float = 2.0,
        max_retry_wait: float = 90.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.store = store
        self.bus = bus or MessageBus()
        self.breaker = breaker or CircuitBreaker()
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.max_retry_wait = max_retry_wait
        self.sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: Config,
        registry: ProviderRegistry,
        store: SessionStore | None = None,
        bus: MessageBus | None = None,
    ) -> "WorkflowEngine":
        return cls(
            registry,
            store=store,
            bus=bus,
            breaker=CircuitBreaker.from_config(config.circuit_breaker),
            timeout=config.provider_timeout_seconds,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
            retry_backoff=config.retry_backoff,
            max_retry_wait=config.max_retry_wait_seconds,
        )

    # ------------------------------------------------------------------
    # provider calls
    # ------------------------------------------------------------------

    async def call_provider(
        self,
        provider_id: str,
        prompt: str,
        context: Dict[str, Any] | None = None,
    ) -> CallOutcome:
        """Call one provider with timeout, retries and the circuit breaker.

        Never raises for provider failures; the outcome carries the
        classified error instead. Cancellation propagates.
        """
        try:
            provider = self.registry.get(provider_id)
        except InvalidRequestError as exc:
            return CallOutcome(provider_id, error=ClassifiedError(UNKNOWN, str(exc), retryable=False))

        limit = getattr(provider, "max_input_chars", None)
        if limit and len(prompt) > limit:
            logger.warning(f"{provider_id}: prompt of {len(prompt)} chars exceeds limit {limit}")
            return CallOutcome(provider_id, error=input_too_long_error(provider_id, len(prompt), limit))

        max_attempts = self.max_retries + 1
        error: ClassifiedError | None = None
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            if not self.breaker.can_call(provider_id):
                error = circuit_open_error(provider_id, self.breaker.retry_after_ms(provider_id))
                logger.warning(f"{provider_id}: circuit open, skipping")
                return CallOutcome(provider_id, error=error, attempts=attempt - 1)
            try:
                result = await asyncio.wait_for(
                    provider.generate(prompt, context=context, timeout=self.timeout),
                    timeout=self.timeout,
                )
            except Exception as exc:
                error = classify_error(exc)
            else:
                if result.ok:
                    self.breaker.record_success(provider_id)
                    return CallOutcome(provider_id, result=result, attempts=attempt)
                error = classify_error(result)
            self.breaker.record_failure(provider_id)

            if not error.retryable or attempt >= max_attempts:
                break
            if error.type == UNKNOWN and attempt >= 2:
                break
            if error.type == RATE_LIMIT:
                wait = (error.retry_after_ms or DEFAULT_RATE_LIMIT_WAIT_MS) / 1000
                if wait > self.max_retry_wait:
                    logger.warning(f"{provider_id}: rate limited for {wait:.0f}s, not retrying")
                    break
            else:
                wait = self.retry_delay * (self.retry_backoff ** (attempt - 1))
            logger.warning(
                f"{provider_id}: {error.type} on attempt {attempt}/{max_attempts}, retrying in {wait:.1f}s"
            )
            await self.sleep(wait)

        logger.warning(f"{provider_id}: giving up after {attempt} attempt(s): {error.message if error else ''}")
        return CallOutcome(provider_id, error=error, attempts=attempt)

    # ------------------------------------------------------------------
    # workflow execution
    # ------------------------------------------------------------------

    async def execute(self, workflow: CompiledWorkflow, session: Session | None = None) -> WorkflowResult:
        session = session or self._session_for(workflow)
        turn = self._turn_for(workflow, session)
        run = _Run(
            workflow=workflow,
            session=session,
            turn=turn,
            result=WorkflowResult(workflow.workflow_id, session.id, turn.id, "running"),
        )
        if workflow.type != "recompute":
            turn.status = "running"
        self._persist(run)
        if workflow.type != "recompute":
            await self._publish(TURN_CREATED, run, {
                "turn_id": turn.id,
                "user_turn_id": turn.user_turn_id,
                "thread_id": turn.thread_id,
                "session_created": workflow.context.session_created,
            })
        logger.info(f"Workflow {workflow.workflow_id} started for session {session.id}")

        try:
            await self._run_steps(run)
        except asyncio.CancelledError:
            logger.info(f"Workflow {workflow.workflow_id} cancelled, keeping completed results")
            await self._finalize(run, "aborted")
            raise

        return await self._complete(run)

    def _session_for(self, workflow: CompiledWorkflow) -> Session:
        session_id = workflow.context.session_id
        if workflow.type == "initialize":
            existing = self.store.get(session_id) if self.store else None
            return existing or Session(id=session_id)
        if self.store is None:
            raise WorkflowError(f"No store to load session {session_id}")
        return self.store.load(session_id)

    def _turn_for(self, workflow: CompiledWorkflow, session: Session) -> AiTurn:
        if isinstance(workflow.resolved, RecomputeContext):
            return session.ai_turn(workflow.resolved.source_turn_id)
        previous = session.last_turn
        user_turn = session.add_user_turn(workflow.context.user_message, workflow.context.thread_id)
        turn = session.add_ai_turn(user_turn, workflow.workflow_id)
        if previous is not None and workflow.type == "extend":
            # Threads of providers that fail or sit this turn out carry over.
            fresh = {
                pid for pid, ctx in workflow.resolved.provider_contexts.items() if ctx.get("is_new_joiner")
            }
            turn.provider_contexts = {
                pid: copy.deepcopy(ctx) for pid, ctx in previous.provider_contexts.items() if pid not in fresh
            }
        return turn

    async def _run_steps(self, run: _Run) -> None:
        for step in run.workflow.steps:
            if isinstance(step, PromptStep):
                successes = await self._run_prompt(step, run)
                run.prompt_ran = True
                if not successes:
                    logger.warning(f"Workflow {run.workflow.workflow_id}: every provider failed, skipping mapping")
                    return
            elif isinstance(step, MappingStep):
                if not await self._run_mapping(step, run):
                    return
            elif isinstance(step, (UnderstandStep, GauntletStep, RefinerStep, AntagonistStep)):
                await self._run_downstream(step, run)
            else:
                raise WorkflowError(f"Unknown step kind: {type(step).__name__}")

    async def _run_prompt(self, step: PromptStep, run: _Run) -> int:
        statuses: Dict[str, Dict[str, Any]] = {pid: {"provider_id": pid, "status": "pending"} for pid in step.providers}

        async def _one(pid: str) -> CallOutcome:
            ctx = step.provider_contexts.get(pid) or {}
            meta = ctx.get("meta") if ctx.get("continue_thread") else None
            prompt = step.prompt
            if meta is None and step.previous_context:
                prompt = _with_previous_context(prompt, step.previous_context)
            outcome = await self.call_provider(pid, prompt, meta)
            self._record(run.turn, "prompt", outcome, persist_context=True)
            statuses[pid] = {"provider_id": pid, "status": "completed" if outcome.ok else "error"}
            if outcome.error:
                statuses[pid]["error"] = outcome.error.to_dict()
            done = sum(1 for s in statuses.values() if s["status"] != "pending")
            await self._publish(WORKFLOW_PROGRESS, run, {
                "phase": "batch",
                "provider_statuses": list(statuses.values()),
                "completed_count": done,
                "total_count": len(step.providers),
            })
            return outcome

        outcomes = await asyncio.gather(*(_one(pid) for pid in step.providers))
        for outcome in outcomes:
            if outcome.ok:
                run.succeed(step.step_id, outcome)
                run.result.successful_providers.append(outcome.provider_id)
            else:
                run.fail(step.step_id, outcome)
        successes = sum(1 for o in outcomes if o.ok)
        await self._step_update(run, step.step_id, outcomes)
        return successes

    async def _run_mapping(self, step: MappingStep, run: _Run) -> bool:
        sources = self._sources(run)
        if not sources:
            logger.warning(f"Mapping step {step.step_id} has no completed outputs to map")
            return False
        order = [pid for pid in step.provider_order if pid in sources]
        prompt = build_mapping_prompt(step.original_prompt, list(sources.items()), order)
        outcome = await self.call_provider(step.mapping_provider, prompt, None)
        self._record(run.turn, "mapping", outcome, persist_context=False)
        await self._step_update(run, step.step_id, [outcome])
        if not outcome.ok:
            run.fail(step.step_id, outcome)
            return False
        run.succeed(step.step_id, outcome)
        artifact = extract_artifact(outcome.text, model_count=len(sources))
        if artifact is not None:
            run.turn.artifact = artifact
            run.result.artifact = artifact
        run.mapping_completed = True
        return True

    async def _run_downstream(self, step, run: _Run) -> None:
        sources = self._sources(run)
        mapping = self._mapping_text(run)
        analysis = compute_structural_analysis(run.turn.claim_map())
        narrative = extract_narrative(mapping)
        if isinstance(step, UnderstandStep):
            prompt = build_understand_prompt(step.original_prompt, analysis, narrative)
        elif isinstance(step, GauntletStep):
            prompt = build_gauntlet_prompt(step.original_prompt, analysis, narrative)
        elif isinstance(step, RefinerStep):
            prior = self._latest_text(run.turn, "understand") or self._latest_text(run.turn, "gauntlet")
            prompt = build_refiner_prompt(step.original_prompt, sources, mapping, prior)
        else:
            refined = self._latest_text(run.turn, "refiner")
            prompt = build_antagonist_prompt(step.original_prompt, sources, mapping, refined)

        outcome = await self.call_provider(step.provider, prompt, None)
        self._record(run.turn, step.kind, outcome, persist_context=False)
        if outcome.ok:
            run.succeed(step.step_id, outcome)
        else:
            run.fail(step.step_id, outcome)
        await self._step_update(run, step.step_id, [outcome])

    def _sources(self, run: _Run) -> Dict[str, str]:
        resolved = run.workflow.resolved
        if isinstance(resolved, RecomputeContext) and resolved.step_type != "prompt":
            return {pid: r.text for pid, r in resolved.frozen_outputs.items()}
        sources: Dict[str, str] = {}
        for pid in run.turn.responses.get("prompt", {}):
            latest = run.turn.latest("prompt", pid, completed_only=True)
            if latest is not None:
                sources[pid] = latest.text
        return sources

    def _mapping_text(self, run: _Run) -> str:
        resolved = run.workflow.resolved
        candidates = [
            v for versions in run.turn.responses.get("mapping", {}).values() for v in versions if v.completed
        ]
        if candidates:
            return max(candidates, key=lambda v: v.updated_at).text
        if isinstance(resolved, RecomputeContext) and resolved.latest_mapping_output:
            return resolved.latest_mapping_output.text
        return ""

    @staticmethod
    def _latest_text(turn: AiTurn, response_type: str) -> str:
        for pid in turn.responses.get(response_type, {}):
            latest = turn.latest(response_type, pid, completed_only=True)
            if latest is not None:
                return latest.text
        return ""

    @staticmethod
    def _record(turn: AiTurn, response_type: str, outcome: CallOutcome, persist_context: bool) -> None:
        turn.add_response(ProviderResponse(
            provider_id=outcome.provider_id,
            response_type=response_type,
            text=outcome.text,
            status="completed" if outcome.ok else "error",
            error=outcome.error.to_dict() if outcome.error else None,
        ))
        # Mapper and downstream contexts are never persisted.
        if outcome.ok and persist_context and outcome.result.context:
            turn.provider_contexts[outcome.provider_id] = dict(outcome.result.context)

    async def _complete(self, run: _Run) -> WorkflowResult:
        workflow = run.workflow
        failed = run.result.failed
        if run.prompt_ran:
            succeeded = bool(run.result.successful_providers)
        else:
            succeeded = bool(run.result.final_results)

        if not succeeded:
            error = "Every provider failed" if run.prompt_ran else "Recompute step failed"
            await self._publish(WORKFLOW_COMPLETE, run, {"error": error, "failed_providers": failed})
            await self._finalize(run, "failed")
            if run.prompt_ran and workflow.context.session_created:
                raise ProviderExhaustedError(f"{error} for new session {run.session.id}")
            return run.result

        if failed:
            await self._publish(WORKFLOW_PARTIAL_COMPLETE, run, {
                "successful_providers": run.result.successful_providers,
                "failed_providers": [{"provider_id": f["provider_id"], "error": f["error"]} for f in failed],
                "mapping_completed": run.mapping_completed,
            })
            await self._finalize(run, "partial")
        else:
            await self._publish(WORKFLOW_COMPLETE, run, {"final_results": run.result.final_results})
            await self._finalize(run, "completed")
        return run.result

    async def _finalize(self, run: _Run, status: str) -> None:
        # A recompute reports its status on the result; the source turn keeps its own.
        if run.workflow.type != "recompute":
            run.turn.status = status
            run.turn.completed_at = now_iso()
        run.result.status = status
        self._persist(run)
        await self._publish(TURN_FINALIZED, run, {"turn_id": run.turn.id, "status": status})
        logger.info(f"Workflow {run.workflow.workflow_id} finished: {status}")

    def _persist(self, run: _Run) -> None:
        """Write this run's turn without overwriting turns saved by other workflows."""
        if self.store is None:
            return
        session, turn = run.session, run.turn
        if not self.store.exists(session.id):
            self.store.save(session)
            return
        user_turn = session.user_turns.get(turn.user_turn_id)
        self.store.update(session.id, lambda stored: stored.merge_turn(turn, user_turn))

    async def _step_update(self, run: _Run, step_id: str, outcomes: List[CallOutcome]) -> None:
        ok = [o for o in outcomes if o.ok]
        payload: Dict[str, Any] = {"step_id": step_id, "status": "completed" if ok else "failed"}
        if ok:
            payload["result"] = {o.provider_id: o.text for o in ok}
        errors = {o.provider_id: o.error.to_dict() for o in outcomes if o.error}
        if errors:
            payload["error"] = errors
        await self._publish(WORKFLOW_STEP_UPDATE, run, payload)

    async def _publish(self, message_type: str, run: _Run, payload: Dict[str, Any]) -> None:
        await self.bus.publish(WorkflowMessage(
            type=message_type,
            session_id=run.session.id,
            workflow_id=run.workflow.workflow_id,
            payload=payload,
        ))

    # ------------------------------------------------------------------
    # concierge analysis batch
    # ------------------------------------------------------------------

    async def run_analysis_batch(self, prompt: str, providers: List[str], mapper: str) -> Dict[str, Any]:
        """Fan ``prompt`` out, map the answers statelessly and analyze the map.

        Raises WorkflowError when no provider answers or the mapper fails.
        """
        outcomes = await asyncio.gather(*(self.call_provider(pid, prompt) for pid in providers))
        texts = {o.provider_id: o.text for o in outcomes if o.ok}
        if not texts:
            raise WorkflowError("Every provider failed the analysis batch")
        mapping = await self.call_provider(mapper, build_mapping_prompt(prompt, list(texts.items())))
        if not mapping.ok:
            raise WorkflowError(f"Mapper {mapper} failed: {mapping.error.message if mapping.error else ''}")
        artifact = extract_artifact(mapping.text, model_count=len(texts))
        analysis = compute_structural_analysis(artifact)
        return {
            "prompt": prompt,
            "responses": texts,
            "artifact": artifact,
            "narrative": extract_narrative(mapping.text),
            "shape": analysis.shape.primary,
            "brief": build_structural_brief(analysis),
        }


def _with_previous_context(prompt: str, previous: Dict[str, Any]) -> str:
    settled = ", ".join(previous.get("consensus") or []) or "nothing yet"
    return (
        f'Earlier in this conversation the user asked: "{previous.get("user_message", "")}"\n'
        f"Settled so far: {settled}\n\n{prompt}"
    )


class SessionRunner:
    """At most one active workflow task per session."""

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}

    async def stop(self, session_id: str) -> bool:
        """Cancel the in-flight workflow and wait until it has finalized."""
        previous = self.active(session_id)
        if previous is None:
            return False
        logger.info(f"Cancelling in-flight workflow for session {session_id}")
        previous.cancel()
        await asyncio.wait({previous})
        return True

    async def start(self, session_id: str, coro: Awaitable[Any]) -> asyncio.Task:
        await self.stop(session_id)
        task = asyncio.ensure_future(coro)
        self._tasks[session_id] = task

        def _forget(done: asyncio.Task, sid: str = session_id) -> None:
            if self._tasks.get(sid) is done:
                self._tasks.pop(sid, None)
            if not done.cancelled() and done.exception() is not None:
                logger.warning(f"Workflow for session {sid} failed: {done.exception()}")

        task.add_done_callback(_forget)
        return task

    def active(self, session_id: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(session_id)
        return task if task is not None and not task.done() else None

    def cancel(self, session_id: str) -> bool:
        task = self.active(session_id)
        if task is None:
            return False
        task.cancel()
        return True
