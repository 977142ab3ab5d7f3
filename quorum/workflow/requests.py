"""Request primitives and boundary parsing."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from quorum.errors import InvalidRequestError

INITIALIZE = "initialize"
EXTEND = "extend"
RECOMPUTE = "recompute"
REQUEST_TYPES = (INITIALIZE, EXTEND, RECOMPUTE)


@dataclass
class InitializeRequest:
    user_message: str
    providers: List[str]
    session_id: str | None = None
    include_mapping: bool = True
    mapper: str | None = None
    refiner: str | None = None
    antagonist: str | None = None
    understand: str | None = None
    gauntlet: str | None = None
    use_thinking: bool = False
    type: str = INITIALIZE


@dataclass
class ExtendRequest:
    session_id: str
    user_message: str
    providers: List[str]
    forced_context_reset: List[str] = field(default_factory=list)
    include_mapping: bool = True
    mapper: str | None = None
    thread_id: str | None = None
    use_thinking: bool = False
    type: str = EXTEND


@dataclass
class RecomputeRequest:
    session_id: str
    source_turn_id: str
    step_type: str
    target_provider: str
    user_message: str | None = None
    use_thinking: bool = False
    type: str = RECOMPUTE


WorkflowRequest = Union[InitializeRequest, ExtendRequest, RecomputeRequest]

_REQUEST_CLASSES = {
    INITIALIZE: InitializeRequest,
    EXTEND: ExtendRequest,
    RECOMPUTE: RecomputeRequest,
}
_REQUIRED = {
    INITIALIZE: ("user_message", "providers"),
    EXTEND: ("session_id", "user_message", "providers"),
    RECOMPUTE: ("session_id", "source_turn_id", "step_type", "target_provider"),
}
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def parse_request(payload: Dict[str, Any]) -> WorkflowRequest:
    """Build a typed request from a camelCase or snake_case payload.

    Raises InvalidRequestError for an unknown ``type`` or a missing field.
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request payload must be an object")
    data = {snake_case(str(k)): v for k, v in payload.items()}
    request_type = data.get("type")
    cls = _REQUEST_CLASSES.get(request_type)
    if cls is None:
        raise InvalidRequestError(f"Unknown request type: {request_type!r}")

    missing = [name for name in _REQUIRED[request_type] if not data.get(name)]
    if missing:
        raise InvalidRequestError(f"{request_type} request missing: {', '.join(missing)}")
    if "providers" in data:
        providers = data["providers"]
        if isinstance(providers, str):
            providers = [providers]
        data["providers"] = [str(p) for p in providers]
    if "forced_context_reset" in data:
        data["forced_context_reset"] = list(data["forced_context_reset"] or [])

    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
    return cls(**known)


def validate_request(request: WorkflowRequest) -> None:
    """Re-check required fields on an already-typed request."""
    if not isinstance(request, (InitializeRequest, ExtendRequest, RecomputeRequest)):
        raise InvalidRequestError(f"Unknown request: {type(request).__name__}")
    for name in _REQUIRED[request.type]:
        if not getattr(request, name, None):
            raise InvalidRequestError(f"{request.type} request missing: {name}")


def request_mapper(request: Any, default: Optional[str] = None) -> str | None:
    """Mapping provider: explicit mapper, else first provider, else default."""
    mapper = getattr(request, "mapper", None)
    if mapper:
        return mapper
    providers = getattr(request, "providers", None) or []
    return providers[0] if providers else default
