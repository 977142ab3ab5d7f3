"""Compile a request plus its resolved context into ordered workflow steps.

Compilation is pure: everything it needs arrives in the resolved context.
Step order encodes dependency (prompt, then mapping, then the steps that
read the mapping).
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, ClassVar, Dict, List, Optional, Union

from quorum.errors import InvalidRequestError
from quorum.session import DEFAULT_THREAD, new_session_id
from quorum.workflow.context import (
    ExtendContext,
    InitializeContext,
    RecomputeContext,
    ResolvedContext,
)
from quorum.workflow.requests import (
    ExtendRequest,
    InitializeRequest,
    RecomputeRequest,
    WorkflowRequest,
    request_mapper,
    validate_request,
)

logger = logging.getLogger(__name__)


def _ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PromptStep:
    kind: ClassVar[str] = "prompt"
    step_id: str
    prompt: str
    providers: List[str]
    provider_contexts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    previous_context: Dict[str, Any] | None = None
    use_thinking: bool = False


@dataclass
class MappingStep:
    """Stateless: the mapper never receives or returns a thread context."""

    kind: ClassVar[str] = "mapping"
    step_id: str
    mapping_provider: str
    original_prompt: str
    source_step_ids: List[str] = field(default_factory=list)
    provider_order: List[str] = field(default_factory=list)
    source_historical: Dict[str, str] | None = None
    use_thinking: bool = False


@dataclass
class _DownstreamStep:
    step_id: str
    provider: str
    original_prompt: str
    source_step_ids: List[str] = field(default_factory=list)
    source_historical: Dict[str, str] | None = None


@dataclass
class UnderstandStep(_DownstreamStep):
    kind: ClassVar[str] = "understand"


@dataclass
class GauntletStep(_DownstreamStep):
    kind: ClassVar[str] = "gauntlet"


@dataclass
class RefinerStep(_DownstreamStep):
    kind: ClassVar[str] = "refiner"


@dataclass
class AntagonistStep(_DownstreamStep):
    kind: ClassVar[str] = "antagonist"


WorkflowStep = Union[PromptStep, MappingStep, UnderstandStep, GauntletStep, RefinerStep, AntagonistStep]
DOWNSTREAM_STEPS = {
    "understand": UnderstandStep,
    "gauntlet": GauntletStep,
    "refiner": RefinerStep,
    "antagonist": AntagonistStep,
}


def step_to_dict(step: WorkflowStep) -> Dict[str, Any]:
    return {"kind": step.kind, **asdict(step)}


@dataclass
class WorkflowContext:
    session_id: str
    thread_id: str = DEFAULT_THREAD
    target_user_turn_id: str = ""
    session_created: bool = False
    user_message: str = ""


@dataclass
class CompiledWorkflow:
    workflow_id: str
    type: str
    context: WorkflowContext
    steps: List[WorkflowStep]
    resolved: ResolvedContext

    def step(self, kind: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.kind == kind:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "type": self.type,
            "context": asdict(self.context),
            "steps": [step_to_dict(s) for s in self.steps],
        }


class WorkflowCompiler:
    def __init__(self, default_mapper: str | None = None) -> None:
        self.default_mapper = default_mapper

    def compile(self, request: WorkflowRequest, resolved: ResolvedContext) -> CompiledWorkflow:
        if resolved is None:
            raise InvalidRequestError("Resolved context required")
        validate_request(request)
        if request.type != resolved.type:
            raise InvalidRequestError(f"Request type {request.type} does not match context {resolved.type}")

        workflow_id = f"wf-{resolved.type}-{_ms()}-{uuid.uuid4().hex[:9]}"
        if isinstance(resolved, RecomputeContext):
            steps = self._recompute_steps(request, resolved)
        else:
            steps = self._fresh_steps(request, resolved)

        logger.info(f"Compiled {resolved.type} workflow {workflow_id} with {len(steps)} steps")
        return CompiledWorkflow(
            workflow_id=workflow_id,
            type=resolved.type,
            context=self._workflow_context(request, resolved),
            steps=steps,
            resolved=resolved,
        )

    def _fresh_steps(self, request: InitializeRequest | ExtendRequest, resolved: ResolvedContext) -> List[WorkflowStep]:
        prompt = self._prompt_step(request, resolved)
        steps: List[WorkflowStep] = [prompt]
        if not request.include_mapping:
            return steps

        mapper = request_mapper(request, self.default_mapper)
        if not mapper:
            raise InvalidRequestError("No mapping provider available")
        mapping = MappingStep(
            step_id=f"mapping-{mapper}-{_ms()}",
            mapping_provider=mapper,
            original_prompt=request.user_message,
            source_step_ids=[prompt.step_id],
            provider_order=list(request.providers),
            use_thinking=request.use_thinking,
        )
        steps.append(mapping)
        if isinstance(request, InitializeRequest):
            steps.extend(self._downstream_steps(request, prompt.step_id, mapping.step_id))
        return steps

    def _prompt_step(self, request: InitializeRequest | ExtendRequest, resolved: ResolvedContext) -> PromptStep:
        contexts: Dict[str, Dict[str, Any]] = {}
        previous = None
        if isinstance(resolved, ExtendContext):
            previous = resolved.previous_context
            for pid, meta in resolved.provider_contexts.items():
                if not resolved.is_new_joiner(pid):
                    contexts[pid] = {"meta": meta, "continue_thread": True}
        return PromptStep(
            step_id=f"batch-{_ms()}",
            prompt=request.user_message,
            providers=list(request.providers),
            provider_contexts=contexts,
            previous_context=previous,
            use_thinking=request.use_thinking,
        )

    def _downstream_steps(self, request: InitializeRequest, prompt_id: str, mapping_id: str) -> List[WorkflowStep]:
        steps: List[WorkflowStep] = []
        for kind in ("understand", "gauntlet"):
            provider = getattr(request, kind)
            if provider:
                steps.append(DOWNSTREAM_STEPS[kind](
                    step_id=f"{kind}-{provider}-{_ms()}",
                    provider=provider,
                    original_prompt=request.user_message,
                    source_step_ids=[prompt_id, mapping_id],
                ))
        refiner_id = None
        if request.refiner:
            refiner = RefinerStep(
                step_id=f"refiner-{request.refiner}-{_ms()}",
                provider=request.refiner,
                original_prompt=request.user_message,
                source_step_ids=[prompt_id, mapping_id] + [s.step_id for s in steps],
            )
            refiner_id = refiner.step_id
            steps.append(refiner)
        if request.antagonist:
            sources = [prompt_id, mapping_id] + ([refiner_id] if refiner_id else [])
            steps.append(AntagonistStep(
                step_id=f"antagonist-{request.antagonist}-{_ms()}",
                provider=request.antagonist,
                original_prompt=request.user_message,
                source_step_ids=sources,
            ))
        return steps

    def _recompute_steps(self, request: RecomputeRequest, resolved: RecomputeContext) -> List[WorkflowStep]:
        provider = resolved.target_provider
        historical = {"turn_id": resolved.source_turn_id, "response_type": "prompt"}
        if resolved.step_type == "prompt":
            meta = resolved.provider_context
            contexts = {provider: {"meta": meta, "continue_thread": True}} if meta else {}
            return [PromptStep(
                step_id=f"batch-retry-{_ms()}",
                prompt=resolved.source_user_message,
                providers=[provider],
                provider_contexts=contexts,
                use_thinking=request.use_thinking,
            )]
        if resolved.step_type == "mapping":
            return [MappingStep(
                step_id=f"mapping-{provider}-{_ms()}",
                mapping_provider=provider,
                original_prompt=resolved.source_user_message,
                provider_order=list(resolved.frozen_outputs),
                source_historical=historical,
                use_thinking=request.use_thinking,
            )]
        step_cls = DOWNSTREAM_STEPS.get(resolved.step_type)
        if step_cls is None:
            raise InvalidRequestError(f"Cannot recompute step type {resolved.step_type!r}")
        return [step_cls(
            step_id=f"{resolved.step_type}-{provider}-{_ms()}",
            provider=provider,
            original_prompt=resolved.source_user_message,
            source_historical=historical,
        )]

    def _workflow_context(self, request: WorkflowRequest, resolved: ResolvedContext) -> WorkflowContext:
        if isinstance(resolved, InitializeContext):
            return WorkflowContext(
                session_id=request.session_id or new_session_id(),
                session_created=True,
                user_message=request.user_message,
            )
        if isinstance(resolved, ExtendContext):
            return WorkflowContext(
                session_id=resolved.session_id,
                thread_id=request.thread_id or DEFAULT_THREAD,
                user_message=request.user_message,
            )
        return WorkflowContext(
            session_id=resolved.session_id,
            target_user_turn_id=resolved.source_turn_id,
            user_message=resolved.source_user_message,
        )
