"""Concierge phase state and its transitions.

Phases only move forward (starter -> explorer -> executor). Every
transition resets the phase turn counter and drops the concierge model
context so the next turn starts a fresh instance primed by the handover.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from quorum.concierge.handover import (
    BatchSignal,
    ExecutionHandover,
    IntentHandover,
    parse_batch_signal,
    parse_intent_handover,
)

logger = logging.getLogger(__name__)

STARTER = "starter"
EXPLORER = "explorer"
EXECUTOR = "executor"
PHASES = (STARTER, EXPLORER, EXECUTOR)

INITIALIZE = "initialize"
CONTINUE = "continue"


@dataclass
class ActiveWorkflow:
    goal: str
    steps: List[Dict[str, Any]] = field(default_factory=list)
    current_step_index: int = 0


@dataclass
class ConciergePhaseState:
    current_phase: str = STARTER
    turn_in_phase: int = 0
    concierge_context_id: str | None = None
    concierge_context: Dict[str, Any] | None = None
    intent_handover: Optional[IntentHandover] = None
    execution_handover: Optional[ExecutionHandover] = None
    active_workflow: Optional[ActiveWorkflow] = None
    seed: Dict[str, Any] | None = None
    pending_workflow_analysis: Dict[str, Any] | None = None
    pending_step_help: Dict[str, Any] | None = None

    @property
    def action(self) -> str:
        return INITIALIZE if self.concierge_context_id is None else CONTINUE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "ConciergePhaseState":
        if not data:
            return cls()
        workflow = data.get("active_workflow")
        phase = data.get("current_phase")
        return cls(
            current_phase=phase if phase in PHASES else STARTER,
            turn_in_phase=int(data.get("turn_in_phase") or 0),
            concierge_context_id=data.get("concierge_context_id"),
            concierge_context=data.get("concierge_context"),
            intent_handover=IntentHandover.from_dict(data.get("intent_handover")),
            execution_handover=ExecutionHandover.from_dict(data.get("execution_handover")),
            active_workflow=ActiveWorkflow(**workflow) if workflow else None,
            seed=data.get("seed"),
            pending_workflow_analysis=data.get("pending_workflow_analysis"),
            pending_step_help=data.get("pending_step_help"),
        )


@dataclass
class TurnSignal:
    """What a concierge reply asks for, read according to the current phase."""

    user_response: str
    handover: Optional[IntentHandover] = None
    batch: Optional[BatchSignal] = None

    @property
    def kind(self) -> str | None:
        if self.handover is not None:
            return "handover"
        if self.batch is not None and self.batch.is_workflow:
            return "workflow"
        if self.batch is not None and self.batch.is_step_help:
            return "step_help"
        return None


def read_signal(phase: str, reply: str) -> TurnSignal:
    """Parse ``reply`` for the blocks valid in ``phase``; others are ignored."""
    if phase == STARTER:
        parsed = parse_intent_handover(reply)
        return TurnSignal(user_response=parsed.user_response, handover=parsed.handover)

    batch = parse_batch_signal(reply)
    if phase == EXPLORER and batch.is_workflow:
        return TurnSignal(user_response=batch.user_response, batch=batch)
    if batch.is_step_help:
        return TurnSignal(user_response=batch.user_response, batch=batch)
    if batch.type:
        logger.info(f"Ignoring {batch.type} block in {phase} phase")
    return TurnSignal(user_response=batch.user_response)


def advance_turn(state: ConciergePhaseState) -> ConciergePhaseState:
    return dataclasses.replace(state, turn_in_phase=state.turn_in_phase + 1)


def enter_phase(state: ConciergePhaseState, phase: str, **updates: Any) -> ConciergePhaseState:
    """Move forward to ``phase``, resetting the turn counter and model context."""
    if phase not in PHASES:
        raise ValueError(f"Unknown phase: {phase}")
    if PHASES.index(phase) <= PHASES.index(state.current_phase):
        raise ValueError(f"Phase transitions are forward only: {state.current_phase} -> {phase}")
    logger.info(f"Concierge phase {state.current_phase} -> {phase}")
    return dataclasses.replace(
        state,
        current_phase=phase,
        turn_in_phase=0,
        concierge_context_id=None,
        concierge_context=None,
        **updates,
    )


def to_explorer(state: ConciergePhaseState, handover: IntentHandover) -> ConciergePhaseState:
    return enter_phase(state, EXPLORER, intent_handover=handover)


def to_executor(
    state: ConciergePhaseState,
    handover: ExecutionHandover | None,
    workflow_analysis: Dict[str, Any],
) -> ConciergePhaseState:
    goal = handover.goal if handover else ""
    return enter_phase(
        state,
        EXECUTOR,
        execution_handover=handover,
        pending_workflow_analysis=workflow_analysis,
        active_workflow=ActiveWorkflow(goal=goal),
    )
