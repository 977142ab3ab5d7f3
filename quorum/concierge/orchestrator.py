"""Per-turn concierge flow.

One call to :meth:`ConciergeOrchestrator.handle_turn` builds the phase
prompt, talks to the concierge provider, reads the reply for handover or
batch blocks and persists the next phase state. Mid-turn batches run the
fan-out, the stateless mapper and the structural analysis before the
phase moves on.
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List

from quorum.config import Config
from quorum.concierge import prompts
from quorum.concierge.phase import (
    EXECUTOR,
    EXPLORER,
    INITIALIZE,
    STARTER,
    ActiveWorkflow,
    ConciergePhaseState,
    TurnSignal,
    advance_turn,
    read_signal,
    to_executor,
    to_explorer,
)
from quorum.errors import WorkflowError
from quorum.session import AiTurn, ProviderResponse, Session, UserTurn
from quorum.store import SessionStore
from quorum.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass
class ConciergeReply:
    session_id: str
    turn_id: str
    phase: str
    turn_in_phase: int
    action: str
    user_response: str
    signal: str | None = None
    transitioned: bool = False
    batch_error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


class ConciergeOrchestrator:
    def __init__(
        self,
        engine: WorkflowEngine,
        store: SessionStore,
        provider_id: str,
        batch_providers: List[str],
        mapper: str,
    ) -> None:
        self.engine = engine
        self.store = store
        self.provider_id = provider_id
        self.batch_providers = batch_providers
        self.mapper = mapper

    @classmethod
    def from_config(cls, config: Config, engine: WorkflowEngine, store: SessionStore) -> "ConciergeOrchestrator":
        concierge = config.concierge
        batch = list(concierge.get("batch_providers") or config.provider_ids)
        return cls(
            engine,
            store,
            provider_id=concierge.get("provider") or (batch[0] if batch else ""),
            batch_providers=batch,
            mapper=config.mapper or (batch[0] if batch else ""),
        )

    async def handle_turn(self, session_id: str | None, user_message: str) -> ConciergeReply:
        session = self.store.load(session_id) if session_id else Session()
        state = session.phase
        action = state.action
        seed_shape: str | None = None
        artifact: Dict[str, Any] | None = None

        if state.current_phase == STARTER and state.turn_in_phase == 0 and action == INITIALIZE:
            analysis = await self._analysis(user_message)
            seed_shape = analysis["shape"] if analysis else "sparse"
            artifact = analysis["artifact"] if analysis else None
            prompt = prompts.build_starter_initial(user_message, analysis["brief"] if analysis else "", seed_shape)
        else:
            prompt = self._build_prompt(state, user_message)

        context = state.concierge_context if action != INITIALIZE else None
        outcome = await self.engine.call_provider(self.provider_id, prompt, context)
        if not outcome.ok:
            message = outcome.error.message if outcome.error else "no response"
            raise WorkflowError(f"Concierge provider {self.provider_id} failed: {message}")

        signal = read_signal(state.current_phase, outcome.text)
        next_state = advance_turn(state)
        next_state = dataclasses.replace(
            next_state,
            concierge_context_id=state.concierge_context_id or f"ctx-{uuid.uuid4().hex[:12]}",
            concierge_context=outcome.result.context or None,
            pending_step_help=None,
        )
        if state.current_phase == EXECUTOR and state.pending_workflow_analysis is not None and action == INITIALIZE:
            next_state = dataclasses.replace(next_state, pending_workflow_analysis=None)
        if seed_shape is not None:
            next_state = dataclasses.replace(next_state, seed={
                "shape": seed_shape,
                "user_query": user_message,
                "starter_response": signal.user_response,
            })

        next_state, batch_error = await self._apply_signal(next_state, signal)

        user_turn = session.add_user_turn(user_message)
        turn = session.add_ai_turn(user_turn)
        turn.add_response(ProviderResponse(
            provider_id=self.provider_id,
            response_type="concierge",
            text=signal.user_response,
            status="completed",
        ))
        turn.artifact = artifact
        turn.status = "completed"
        session.phase = next_state
        self._persist(session, user_turn, turn)

        return ConciergeReply(
            session_id=session.id,
            turn_id=turn.id,
            phase=next_state.current_phase,
            turn_in_phase=next_state.turn_in_phase,
            action=action,
            user_response=signal.user_response,
            signal=signal.kind,
            transitioned=next_state.current_phase != state.current_phase,
            batch_error=batch_error,
        )

    def _persist(self, session: Session, user_turn: UserTurn, turn: AiTurn) -> None:
        if not self.store.exists(session.id):
            self.store.save(session)
            return

        def _merge(stored: Session) -> None:
            stored.merge_turn(turn, user_turn)
            stored.phase = session.phase

        self.store.update(session.id, _merge)

    def _build_prompt(self, state: ConciergePhaseState, user_message: str) -> str:
        if state.pending_step_help:
            return prompts.build_step_help_result(state.pending_step_help.get("brief", ""), user_message)
        phase = state.current_phase
        if state.action == INITIALIZE:
            if phase == EXPLORER and state.intent_handover is not None:
                return prompts.build_explorer_initial(state.intent_handover, user_message)
            if phase == EXECUTOR:
                brief = (state.pending_workflow_analysis or {}).get("brief", "")
                return prompts.build_executor_initial(state.execution_handover, brief, user_message)
            return prompts.build_starter_initial(user_message, "", (state.seed or {}).get("shape", "sparse"))
        if phase == EXPLORER:
            return prompts.build_explorer_continue(user_message)
        if phase == EXECUTOR:
            return prompts.build_executor_continue(user_message)
        return prompts.build_starter_continue(user_message, state.seed)

    async def _analysis(self, prompt: str) -> Dict[str, Any] | None:
        try:
            return await self.engine.run_analysis_batch(prompt, self.batch_providers, self.mapper)
        except WorkflowError as exc:
            logger.warning(f"Concierge analysis batch failed: {exc}")
            return None

    async def _apply_signal(
        self,
        state: ConciergePhaseState,
        signal: TurnSignal,
    ) -> tuple[ConciergePhaseState, str | None]:
        kind = signal.kind
        if kind == "handover":
            return to_explorer(state, signal.handover), None
        if kind not in ("workflow", "step_help"):
            return state, None

        analysis = await self._analysis(signal.batch.prompt)
        if analysis is None:
            return state, f"{kind} batch failed; staying in {state.current_phase}"
        if kind == "workflow":
            return to_executor(state, signal.batch.handover, analysis), None

        workflow = state.active_workflow
        if workflow is not None and signal.batch.step:
            steps = workflow.steps + [{"step": signal.batch.step, "blocker": signal.batch.blocker}]
            workflow = ActiveWorkflow(goal=workflow.goal, steps=steps, current_step_index=len(steps) - 1)
        return dataclasses.replace(state, pending_step_help=analysis, active_workflow=workflow), None
