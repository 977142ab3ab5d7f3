"""Session aggregate: threads, user and AI turns, provider response buckets."""
from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from quorum.analysis.artifact import ArtifactEdits, ClaimMap, apply_edits, normalize_artifact
from quorum.concierge.phase import ConciergePhaseState
from quorum.errors import InvalidRequestError

DEFAULT_THREAD = "default-thread"
RESPONSE_TYPES = ("prompt", "mapping", "refiner", "antagonist", "understand", "gauntlet", "concierge")
STATUS_RANK = {"completed": 2, "streaming": 1}


def now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def new_session_id() -> str:
    return "session-" + time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]


def _title(text: str) -> str:
    return text.strip().splitlines()[0][:80] if text.strip() else ""


def _turn_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class ProviderResponse:
    provider_id: str
    response_type: str
    text: str = ""
    status: str = "pending"
    error: Dict[str, Any] | None = None
    context: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderResponse":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Thread:
    id: str
    name: str = "Main"
    branch_point_turn_id: str | None = None
    created_at: str = field(default_factory=now_iso)


@dataclass
class UserTurn:
    id: str
    text: str
    thread_id: str = DEFAULT_THREAD
    created_at: str = field(default_factory=now_iso)


@dataclass
class AiTurn:
    id: str
    user_turn_id: str
    thread_id: str = DEFAULT_THREAD
    workflow_id: str | None = None
    status: str = "pending"
    responses: Dict[str, Dict[str, List[ProviderResponse]]] = field(default_factory=dict)
    provider_contexts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    artifact: Dict[str, Any] | None = None
    edits: Dict[str, Any] | None = None
    created_at: str = field(default_factory=now_iso)
    completed_at: str | None = None

    def add_response(self, response: ProviderResponse) -> ProviderResponse:
        """Append a new version to the bucket for this type and provider."""
        if response.response_type not in RESPONSE_TYPES:
            raise ValueError(f"Unknown response type: {response.response_type}")
        versions = self.responses.setdefault(response.response_type, {}).setdefault(response.provider_id, [])
        response.version = len(versions) + 1
        versions.append(response)
        return response

    def versions(self, response_type: str, provider_id: str) -> List[ProviderResponse]:
        return self.responses.get(response_type, {}).get(provider_id, [])

    def latest(self, response_type: str, provider_id: str, completed_only: bool = False) -> ProviderResponse | None:
        versions = self.versions(response_type, provider_id)
        if completed_only:
            versions = [v for v in versions if v.completed]
        if not versions:
            return None
        best = versions[0]
        for candidate in versions[1:]:
            if STATUS_RANK.get(candidate.status, 0) >= STATUS_RANK.get(best.status, 0):
                best = candidate
        return best

    def response_types(self) -> List[str]:
        return [t for t, bucket in self.responses.items() if bucket]

    def claim_map(self) -> ClaimMap:
        """The mapper artifact with the user's edit overlay applied."""
        base = normalize_artifact(self.artifact)
        edits = ArtifactEdits.from_dict(self.id, self.edits) if self.edits else None
        return apply_edits(base, edits)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = "ai"
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AiTurn":
        responses = {
            response_type: {
                pid: [ProviderResponse.from_dict(v) for v in versions]
                for pid, versions in (bucket or {}).items()
            }
            for response_type, bucket in (data.get("responses") or {}).items()
        }
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "responses"}
        return cls(responses=responses, **fields)


@dataclass
class Session:
    id: str = field(default_factory=new_session_id)
    title: str = ""
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    threads: Dict[str, Thread] = field(default_factory=lambda: {DEFAULT_THREAD: Thread(DEFAULT_THREAD)})
    user_turns: Dict[str, UserTurn] = field(default_factory=dict)
    ai_turns: Dict[str, AiTurn] = field(default_factory=dict)
    turn_order: List[str] = field(default_factory=list)
    last_turn_id: str | None = None
    phase: ConciergePhaseState = field(default_factory=ConciergePhaseState)

    def add_user_turn(self, text: str, thread_id: str = DEFAULT_THREAD) -> UserTurn:
        if not self.title:
            self.title = _title(text)
        turn = UserTurn(id=_turn_id("user"), text=text, thread_id=thread_id)
        self.user_turns[turn.id] = turn
        self.turn_order.append(turn.id)
        self.touch()
        return turn

    def add_ai_turn(self, user_turn: UserTurn, workflow_id: str | None = None) -> AiTurn:
        turn = AiTurn(
            id=_turn_id("ai"),
            user_turn_id=user_turn.id,
            thread_id=user_turn.thread_id,
            workflow_id=workflow_id,
        )
        self.ai_turns[turn.id] = turn
        self.turn_order.append(turn.id)
        self.last_turn_id = turn.id
        self.touch()
        return turn

    def merge_turn(self, ai_turn: AiTurn, user_turn: UserTurn | None = None) -> None:
        """Write one turn pair into this session, leaving every other turn as stored.

        Edits recorded on disk after ``ai_turn`` was loaded are kept.
        """
        if user_turn is not None and user_turn.id not in self.user_turns:
            if not self.title:
                self.title = _title(user_turn.text)
            self.user_turns[user_turn.id] = user_turn
            self.turn_order.append(user_turn.id)
        stored = self.ai_turns.get(ai_turn.id)
        if stored is None:
            self.turn_order.append(ai_turn.id)
            self.last_turn_id = ai_turn.id
        elif stored.edits and not ai_turn.edits:
            ai_turn.edits = stored.edits
        self.ai_turns[ai_turn.id] = ai_turn
        self.touch()

    def ai_turn(self, turn_id: str) -> AiTurn:
        turn = self.ai_turns.get(turn_id)
        if turn is None:
            raise InvalidRequestError(f"Turn {turn_id} not found in session {self.id}")
        return turn

    @property
    def last_turn(self) -> AiTurn | None:
        return self.ai_turns.get(self.last_turn_id) if self.last_turn_id else None

    def user_message_for(self, ai_turn: AiTurn) -> str:
        user_turn = self.user_turns.get(ai_turn.user_turn_id)
        return user_turn.text if user_turn else ""

    def branch(self, from_turn_id: str, name: str = "") -> Thread:
        self.ai_turn(from_turn_id)
        thread_id = f"thread-{uuid.uuid4().hex[:8]}"
        thread = Thread(id=thread_id, name=name or f"Branch {len(self.threads)}", branch_point_turn_id=from_turn_id)
        self.threads[thread_id] = thread
        self.touch()
        return thread

    def touch(self) -> None:
        self.updated_at = now_iso()

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "turn_count": len(self.ai_turns),
            "phase": self.phase.current_phase,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "threads": {tid: asdict(t) for tid, t in self.threads.items()},
            "turns": [
                self.ai_turns[tid].to_dict() if tid in self.ai_turns else dict(asdict(self.user_turns[tid]), kind="user")
                for tid in self.turn_order
                if tid in self.ai_turns or tid in self.user_turns
            ],
            "last_turn_id": self.last_turn_id,
            "phase": self.phase.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        session = cls(
            id=data["id"],
            title=data.get("title") or "",
            created_at=data.get("created_at") or now_iso(),
            updated_at=data.get("updated_at") or now_iso(),
            threads={tid: Thread(**t) for tid, t in (data.get("threads") or {}).items()} or {DEFAULT_THREAD: Thread(DEFAULT_THREAD)},
            last_turn_id=data.get("last_turn_id"),
            phase=ConciergePhaseState.from_dict(data.get("phase")),
        )
        for item in data.get("turns") or []:
            item = dict(item)
            kind = item.pop("kind", "user")
            if kind == "ai":
                turn = AiTurn.from_dict(item)
                session.ai_turns[turn.id] = turn
            else:
                turn = UserTurn(**{k: v for k, v in item.items() if k in UserTurn.__dataclass_fields__})
                session.user_turns[turn.id] = turn
            session.turn_order.append(turn.id)
        return session


def freeze(response: ProviderResponse) -> ProviderResponse:
    return copy.deepcopy(response)
