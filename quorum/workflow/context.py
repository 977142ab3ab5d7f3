"""Resolve the minimal context a workflow request needs.

One resolved variant per request type. Resolution reads the session
aggregate but never mutates it; recompute hands out deep copies of the
frozen sibling outputs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from quorum.errors import InvalidRequestError
from quorum.session import AiTurn, ProviderResponse, Session, freeze
from quorum.store import SessionStore
from quorum.workflow.requests import (
    ExtendRequest,
    InitializeRequest,
    RecomputeRequest,
    WorkflowRequest,
    validate_request,
)

logger = logging.getLogger(__name__)

STEP_ALIASES = {"batch": "prompt"}


def canonical_step_type(step_type: str) -> str:
    return STEP_ALIASES.get(step_type, step_type)


def unwrap_meta(context: Any) -> Dict[str, Any] | None:
    """Stored contexts come as ``meta`` or ``{"meta": meta}``."""
    if not context:
        return None
    if isinstance(context, dict) and isinstance(context.get("meta"), dict):
        return context["meta"]
    return context if isinstance(context, dict) else None


@dataclass
class InitializeContext:
    providers: List[str]
    type: str = "initialize"


@dataclass
class ExtendContext:
    session_id: str
    last_turn_id: str
    provider_contexts: Dict[str, Dict[str, Any]]
    previous_context: Dict[str, Any] | None = None
    type: str = "extend"

    def is_new_joiner(self, provider_id: str) -> bool:
        return bool(self.provider_contexts.get(provider_id, {}).get("is_new_joiner"))


@dataclass
class RecomputeContext:
    session_id: str
    source_turn_id: str
    step_type: str
    target_provider: str
    frozen_outputs: Dict[str, ProviderResponse] = field(default_factory=dict)
    provider_context: Dict[str, Any] | None = None
    source_user_message: str = ""
    latest_mapping_output: Optional[ProviderResponse] = None
    type: str = "recompute"


ResolvedContext = Union[InitializeContext, ExtendContext, RecomputeContext]


class ContextResolver:
    """Looks up sessions in a :class:`SessionStore` unless one is passed in."""

    def __init__(self, store: SessionStore | None = None) -> None:
        self.store = store

    def resolve(self, request: WorkflowRequest, session: Session | None = None) -> ResolvedContext:
        validate_request(request)
        if isinstance(request, InitializeRequest):
            return InitializeContext(providers=list(request.providers))
        session = session or self._load(request.session_id)
        if isinstance(request, ExtendRequest):
            return self._resolve_extend(request, session)
        return self._resolve_recompute(request, session)

    def _load(self, session_id: str) -> Session:
        if self.store is None:
            raise InvalidRequestError(f"No session store to resolve {session_id}")
        return self.store.load(session_id)

    def _resolve_extend(self, request: ExtendRequest, session: Session) -> ExtendContext:
        last_turn = session.last_turn
        if last_turn is None:
            raise InvalidRequestError(f"Cannot extend: no last turn for session {session.id}")

        stored = {pid: unwrap_meta(ctx) for pid, ctx in last_turn.provider_contexts.items()}
        forced = set(request.forced_context_reset or [])
        resolved: Dict[str, Dict[str, Any]] = {}
        for pid in request.providers:
            if pid in forced or not stored.get(pid):
                resolved[pid] = {"is_new_joiner": True}
            else:
                resolved[pid] = stored[pid]
        joiners = [pid for pid in resolved if resolved[pid].get("is_new_joiner")]
        if joiners:
            logger.debug(f"Extend {session.id}: fresh context for {', '.join(joiners)}")

        return ExtendContext(
            session_id=session.id,
            last_turn_id=last_turn.id,
            provider_contexts=resolved,
            previous_context=self._previous_context(session, last_turn),
        )

    def _previous_context(self, session: Session, turn: AiTurn) -> Dict[str, Any] | None:
        if not turn.artifact:
            return None
        claim_map = turn.claim_map()
        return {
            "turn_id": turn.id,
            "user_message": session.user_message_for(turn),
            "consensus": [c.label for c in claim_map.consensus_claims()],
            "ghost": claim_map.ghost,
        }

    def _resolve_recompute(self, request: RecomputeRequest, session: Session) -> RecomputeContext:
        source = session.ai_turn(request.source_turn_id)
        step_type = canonical_step_type(request.step_type)
        if step_type not in source.response_types():
            raise InvalidRequestError(
                f"Step type {request.step_type!r} never ran on turn {source.id}"
            )

        frozen = self.frozen_outputs(source)
        if step_type != "prompt" and not frozen:
            raise InvalidRequestError(f"Turn {source.id} has no completed prompt outputs to recompute from")

        return RecomputeContext(
            session_id=session.id,
            source_turn_id=source.id,
            step_type=step_type,
            target_provider=request.target_provider,
            frozen_outputs=frozen,
            provider_context=unwrap_meta(source.provider_contexts.get(request.target_provider)),
            source_user_message=request.user_message or session.user_message_for(source),
            latest_mapping_output=self.latest_mapping_output(source),
        )

    @staticmethod
    def frozen_outputs(turn: AiTurn) -> Dict[str, ProviderResponse]:
        """Latest completed prompt output per provider, deep-copied."""
        frozen: Dict[str, ProviderResponse] = {}
        for pid in turn.responses.get("prompt", {}):
            latest = turn.latest("prompt", pid, completed_only=True)
            if latest is not None:
                frozen[pid] = freeze(latest)
        return frozen

    @staticmethod
    def latest_mapping_output(turn: AiTurn) -> ProviderResponse | None:
        candidates = [
            v
            for versions in turn.responses.get("mapping", {}).values()
            for v in versions
            if v.completed and v.text.strip()
        ]
        if not candidates:
            return None
        return freeze(max(candidates, key=lambda v: v.updated_at))
