"""Parser for the delimiter blocks concierge models append to their replies.

Text before the opening delimiter is shown to the user. A block that is
missing or never closed yields no signal and the whole reply is shown.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

HANDOVER_START = "<<<HANDOVER>>>"
BLOCK_END = "<<<END>>>"
BATCH_START = "<<<BATCH>>>"
LEGACY_BATCH_START = "<<<SINGULARITY_BATCH_REQUEST>>>"
LEGACY_BATCH_END = "<<<END_BATCH_REQUEST>>>"

BATCH_MARKERS = [
    (LEGACY_BATCH_START, LEGACY_BATCH_END),
    (BATCH_START, BLOCK_END),
]

WORKFLOW = "WORKFLOW"
STEP_HELP = "STEP_HELP"


@dataclass
class IntentHandover:
    shape: str = ""
    key_findings: List[str] = field(default_factory=list)
    tensions: List[str] = field(default_factory=list)
    gaps: List[str] = field(default_factory=list)
    user_query: str = ""
    starter_response: str = ""
    user_reply: str = ""
    implied_goal: str = ""
    revealed_constraints: List[str] = field(default_factory=list)
    accepted_framing: str = ""
    resisted_framing: str | None = None
    unprompted_reveals: List[str] = field(default_factory=list)
    still_unclear: List[str] = field(default_factory=list)
    effective_stance: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "IntentHandover | None":
        if not data:
            return None
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ExecutionHandover:
    goal: str = ""
    problem_summary: str = ""
    situation: str = ""
    constraints: List[str] = field(default_factory=list)
    priorities: List[str] = field(default_factory=list)
    decisions_made: List[str] = field(default_factory=list)
    open_questions: List[str] = field(default_factory=list)
    exploration_highlights: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "ExecutionHandover | None":
        if not data:
            return None
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class HandoverParse:
    user_response: str
    handover: Optional[IntentHandover] = None


@dataclass
class BatchSignal:
    user_response: str
    type: str | None = None
    handover: Optional[ExecutionHandover] = None
    prompt: str | None = None
    step: str | None = None
    blocker: str | None = None
    context: str | None = None

    @property
    def is_workflow(self) -> bool:
        return self.type == WORKFLOW and bool(self.prompt)

    @property
    def is_step_help(self) -> bool:
        return self.type == STEP_HELP and bool(self.prompt)


def normalize_key(key: str) -> str:
    key = re.sub(r"[^a-z0-9_]", "_", str(key or "").strip().lower())
    return re.sub(r"_+", "_", key).strip("_")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_inline_list(value: str) -> List[str]:
    inner = value.strip()
    if inner.startswith("["):
        inner = inner[1:]
    if inner.endswith("]"):
        inner = inner[:-1]
    return [_unquote(item.strip()) for item in inner.split(",") if item.strip()]


def parse_scalar(value: str | None) -> str | None:
    text = str(value or "").strip()
    if not text or text.lower() == "null":
        return None
    return _unquote(text)


def parse_key_values(lines: List[str]) -> Dict[str, Any]:
    """``key: value`` lines; ``[a, b]`` values become lists."""
    out: Dict[str, Any] = {}
    for raw in lines:
        line = str(raw or "").rstrip()
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        value = value.strip()
        if value.startswith("[") and value.endswith("]"):
            out[normalize_key(key)] = parse_inline_list(value)
        else:
            out[normalize_key(key)] = parse_scalar(value)
    return out


def split_block(response: str, start: str, end: str) -> Tuple[str, str | None]:
    start_index = response.find(start)
    if start_index == -1:
        return response.strip(), None
    rest = response[start_index + len(start):]
    end_index = rest.find(end)
    if end_index == -1:
        return response.strip(), None
    return response[:start_index].strip(), rest[:end_index].strip()


def _as_list(value: Any) -> List[str]:
    return list(value) if isinstance(value, list) else []


def _as_text(value: Any) -> str:
    return "" if value is None or isinstance(value, list) else str(value)


def parse_intent_handover(response: str) -> HandoverParse:
    before, inside = split_block(response or "", HANDOVER_START, BLOCK_END)
    if not inside:
        return HandoverParse(user_response=before)
    raw = parse_key_values(inside.split("\n"))
    handover = IntentHandover(
        shape=_as_text(raw.get("shape")),
        key_findings=_as_list(raw.get("key_findings")),
        tensions=_as_list(raw.get("tensions")),
        gaps=_as_list(raw.get("gaps")),
        user_query=_as_text(raw.get("user_query")),
        starter_response=_as_text(raw.get("starter_response")),
        user_reply=_as_text(raw.get("user_reply")),
        implied_goal=_as_text(raw.get("goal") or raw.get("implied_goal")),
        revealed_constraints=_as_list(raw.get("constraints")),
        accepted_framing=_as_text(raw.get("accepted_framing")),
        resisted_framing=None if raw.get("resisted_framing") is None else _as_text(raw.get("resisted_framing")),
        unprompted_reveals=_as_list(raw.get("unprompted_reveals")),
        still_unclear=_as_list(raw.get("still_unclear")),
        effective_stance=_as_text(raw.get("effective_stance")),
    )
    return HandoverParse(user_response=before, handover=handover)


def _indented_block(lines: List[str], start: int) -> Tuple[List[str], int]:
    block = []
    index = start
    while index < len(lines):
        line = lines[index]
        if line and not line[0].isspace():
            break
        if line:
            block.append(line.lstrip())
        index += 1
    return block, index


def _field_value(line: str) -> str | None:
    return parse_scalar(line.split(":", 1)[1])


def parse_batch_signal(response: str) -> BatchSignal:
    text = response or ""
    before, inside = text.strip(), None
    for start, end in BATCH_MARKERS:
        split_before, split_inside = split_block(text, start, end)
        if split_inside:
            before, inside = split_before, split_inside
            break
    if not inside:
        return BatchSignal(user_response=before)

    signal = BatchSignal(user_response=before)
    handover = None
    lines = inside.split("\n")
    index = 0
    while index < len(lines):
        stripped = lines[index].strip()
        lowered = stripped.lower()
        if lowered.startswith("type:"):
            value = stripped.split(":", 1)[1].strip().upper()
            signal.type = value if value in (WORKFLOW, STEP_HELP) else None
        elif lowered.startswith("step:"):
            signal.step = _field_value(stripped)
        elif lowered.startswith("blocker:"):
            signal.blocker = _field_value(stripped)
        elif lowered.startswith("context:"):
            signal.context = _field_value(stripped)
        elif lowered.startswith("handover:"):
            block, index = _indented_block(lines, index + 1)
            raw = parse_key_values(block)
            handover = ExecutionHandover(
                goal=_as_text(raw.get("goal")),
                problem_summary=_as_text(raw.get("problem_summary")),
                situation=_as_text(raw.get("situation")),
                constraints=_as_list(raw.get("constraints")),
                priorities=_as_list(raw.get("priorities")),
                decisions_made=_as_list(raw.get("decisions_made")),
                open_questions=_as_list(raw.get("open_questions")),
                exploration_highlights=_as_list(raw.get("exploration_highlights")),
            )
            continue
        elif lowered.startswith("prompt:"):
            inline = stripped.split(":", 1)[1].strip()
            rest = "\n".join([inline] + lines[index + 1:]).strip()
            signal.prompt = rest or None
            break
        index += 1

    signal.handover = handover if signal.type == WORKFLOW else None
    return signal
