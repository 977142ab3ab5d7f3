"""Claim-map artifact normalization.

The mapper emits one of two shapes: the flat graph ``{claims, edges, ghosts}``
or the structured consensus form ``{consensus, outliers, tensions, ghost}``.
Both normalize into a single :class:`ClaimMap`: the claim graph plus the
consensus metadata. The structured form is adapted onto the graph and the
flat form has its consensus metadata derived, so downstream code never
branches on the input shape.
"""
from __future__ import annotations

import copy
import json
import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional

from quorum.errors import ArtifactError

logger = logging.getLogger(__name__)

CLAIM_TYPES = ("factual", "prescriptive", "conditional", "contested", "speculative")
CLAIM_ROLES = ("anchor", "branch", "challenger", "supplement")
EDGE_TYPES = ("supports", "conflicts", "tradeoff", "prerequisite")
OUTLIER_TYPES = ("frame_challenger", "supplemental")
TOPOLOGIES = ("high_confidence", "dimensional", "contested")
QUALITIES = ("resolved", "conventional", "deflected")

DEFAULT_CLAIM_TYPE = "prescriptive"
DEFAULT_CLAIM_ROLE = "branch"
LABEL_LENGTH = 60


@dataclass
class Claim:
    id: str
    label: str
    text: str = ""
    type: str = DEFAULT_CLAIM_TYPE
    role: str = DEFAULT_CLAIM_ROLE
    dimension: str | None = None
    supporters: List[int] = field(default_factory=list)
    applies_when: str | None = None
    challenges: str | None = None
    source: str | None = None

    @property
    def support_count(self) -> int:
        return len(self.supporters)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Edge:
    source: str
    target: str
    type: str

    def touches(self, claim_id: str) -> bool:
        return self.source == claim_id or self.target == claim_id

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.source, "to": self.target, "type": self.type}


@dataclass
class Outlier:
    claim_id: str
    insight: str
    source: str = ""
    type: str = "supplemental"
    dimension: str | None = None
    applies_when: str | None = None
    challenges: str | None = None

    @property
    def is_frame_challenger(self) -> bool:
        return self.type == "frame_challenger"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Tension:
    between: List[str]
    type: str = "conflicts"
    axis: str = "general"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClaimMap:
    """Canonical, validated claim graph for one turn."""

    claims: List[Claim] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    ghosts: List[str] = field(default_factory=list)
    model_count: int = 1
    consensus_ids: List[str] = field(default_factory=list)
    quality: str = "deflected"
    strength: float = 0.0
    outliers: List[Outlier] = field(default_factory=list)
    tensions: List[Tension] = field(default_factory=list)
    topology: str = "contested"
    dimensions: List[str] = field(default_factory=list)
    source_shape: str = "empty"

    @classmethod
    def empty(cls) -> "ClaimMap":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.claims

    @property
    def ghost(self) -> str | None:
        return self.ghosts[0] if self.ghosts else None

    def claim(self, claim_id: str) -> Claim | None:
        for claim in self.claims:
            if claim.id == claim_id:
                return claim
        return None

    def consensus_claims(self) -> List[Claim]:
        by_id = {claim.id: claim for claim in self.claims}
        return [by_id[cid] for cid in self.consensus_ids if cid in by_id]

    def frame_challengers(self) -> List[Outlier]:
        return [o for o in self.outliers if o.is_frame_challenger]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claims": [c.to_dict() for c in self.claims],
            "edges": [e.to_dict() for e in self.edges],
            "ghosts": list(self.ghosts),
            "model_count": self.model_count,
            "consensus": {
                "claim_ids": list(self.consensus_ids),
                "quality": self.quality,
                "strength": self.strength,
            },
            "outliers": [o.to_dict() for o in self.outliers],
            "tensions": [t.to_dict() for t in self.tensions],
            "topology": self.topology,
            "dimensions_found": list(self.dimensions),
            "source_shape": self.source_shape,
        }


# ---------------------------------------------------------------------------
# field coercion
# ---------------------------------------------------------------------------

def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> str | None:
    text = _text(value)
    return text or None


def _label(text: str) -> str:
    if len(text) <= LABEL_LENGTH:
        return text
    return text[: LABEL_LENGTH - 3].rstrip() + "..."


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0 and not math.isnan(value):
        return int(value)
    return None


def _unit_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return default
    return max(0.0, min(1.0, float(value)))


def _supporters(value: Any) -> List[int]:
    result: List[int] = []
    if not isinstance(value, (list, tuple)):
        return result
    for item in value:
        if isinstance(item, bool):
            continue
        if isinstance(item, int) and item >= 0 and item not in result:
            result.append(item)
        elif isinstance(item, str) and item.strip().isdigit():
            index = int(item.strip())
            if index not in result:
                result.append(index)
    return result


def _choice(value: Any, allowed: Iterable[str], default: str) -> str:
    text = _text(value).lower()
    return text if text in allowed else default


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _model_count(declared: int | None, claims: List[Claim]) -> int:
    if declared:
        return declared
    seen = {s for claim in claims for s in claim.supporters}
    if not seen:
        return 1
    return max(len(seen), max(seen) + 1)


def _enforce_supporter_bounds(claims: List[Claim], model_count: int) -> None:
    for claim in claims:
        kept = [s for s in claim.supporters if s < model_count]
        if len(kept) != len(claim.supporters):
            logger.warning(
                f"Claim {claim.id}: dropped supporter indices outside model count {model_count}"
            )
            claim.supporters = kept


def _valid_edges(raw_edges: Any, claim_ids: set) -> List[Edge]:
    edges: List[Edge] = []
    seen = set()
    if not isinstance(raw_edges, list):
        return edges
    for item in raw_edges:
        if not isinstance(item, dict):
            continue
        source = _text(item.get("from", item.get("source")))
        target = _text(item.get("to", item.get("target")))
        edge_type = _text(item.get("type")).lower()
        if edge_type not in EDGE_TYPES:
            logger.debug(f"Dropping edge {source}->{target} with unknown type {edge_type!r}")
            continue
        if source not in claim_ids or target not in claim_ids:
            logger.warning(f"Dropping edge {source}->{target}: endpoint missing")
            continue
        if source == target:
            continue
        key = (source, target, edge_type)
        if key in seen:
            continue
        seen.add(key)
        edges.append(Edge(source, target, edge_type))
    return edges


def _percentile_support_level(claims: List[Claim], ratio: float = 0.3) -> int:
    if not claims:
        return 0
    top_n = max(1, math.ceil(len(claims) * ratio))
    ordered = sorted((c.support_count for c in claims), reverse=True)
    return ordered[top_n - 1]


def _dimensions(claims: List[Claim]) -> List[str]:
    found: List[str] = []
    for claim in claims:
        if claim.dimension and claim.dimension not in found:
            found.append(claim.dimension)
    return found


def _infer_topology(
    claims: List[Claim],
    consensus: List[Claim],
    edges: List[Edge],
    tensions: List[Tension],
    strength: float,
    model_count: int,
) -> str:
    if tensions or any(e.type == "conflicts" for e in edges):
        return "contested"
    majority = any(c.support_count / max(model_count, 1) > 0.5 for c in consensus)
    if len(_dimensions(claims)) >= 2 and not majority:
        return "dimensional"
    if strength >= 0.8:
        return "high_confidence"
    return "contested"


def _infer_quality(consensus: List[Claim], edges: List[Edge], strength: float) -> str:
    if not consensus:
        return "deflected"
    consensus_ids = {c.id for c in consensus}
    conflicted = any(
        e.type == "conflicts" and (e.source in consensus_ids or e.target in consensus_ids)
        for e in edges
    )
    if strength >= 0.9 and not conflicted:
        return "resolved"
    return "conventional"


# ---------------------------------------------------------------------------
# flat shape
# ---------------------------------------------------------------------------

def _flat_claims(raw_claims: List[Any]) -> List[Claim]:
    claims: List[Claim] = []
    seen: set = set()
    for index, item in enumerate(raw_claims):
        if not isinstance(item, dict):
            logger.debug(f"Skipping non-object claim at index {index}")
            continue
        claim_id = _text(item.get("id")) or f"claim_{index + 1}"
        if claim_id in seen:
            logger.warning(f"Dropping duplicate claim id {claim_id}")
            continue
        seen.add(claim_id)
        text = _text(item.get("text")) or _text(item.get("label"))
        claims.append(
            Claim(
                id=claim_id,
                label=_text(item.get("label")) or _label(text) or claim_id,
                text=text,
                type=_choice(item.get("type"), CLAIM_TYPES, DEFAULT_CLAIM_TYPE),
                role=_choice(item.get("role"), CLAIM_ROLES, DEFAULT_CLAIM_ROLE),
                dimension=_optional_text(item.get("dimension")),
                supporters=_supporters(item.get("supporters")),
                applies_when=_optional_text(item.get("applies_when")),
                challenges=_optional_text(item.get("challenges")),
                source=_optional_text(item.get("source")),
            )
        )
    return claims


def _normalize_flat(raw: Dict[str, Any]) -> ClaimMap:
    claims = _flat_claims(raw.get("claims") or [])
    model_count = _model_count(_positive_int(raw.get("model_count")), claims)
    _enforce_supporter_bounds(claims, model_count)
    edges = _valid_edges(raw.get("edges"), {c.id for c in claims})
    ghosts = _string_list(raw.get("ghosts"))

    minimum = 2 if model_count >= 2 else 1
    level = max(_percentile_support_level(claims), minimum)
    consensus = [
        c for c in claims
        if c.support_count >= level and c.role not in ("challenger", "supplement")
    ]
    consensus_ids = {c.id for c in consensus}
    strength = (
        sum(c.support_count / model_count for c in consensus) / len(consensus)
        if consensus else 0.0
    )
    outliers = [
        Outlier(
            claim_id=c.id,
            insight=c.text or c.label,
            source=c.source or "",
            type="frame_challenger" if c.role == "challenger" else "supplemental",
            dimension=c.dimension,
            applies_when=c.applies_when,
            challenges=c.challenges,
        )
        for c in claims
        if c.id not in consensus_ids and (c.role in ("challenger", "supplement") or c.support_count <= 1)
    ]
    return ClaimMap(
        claims=claims,
        edges=edges,
        ghosts=ghosts,
        model_count=model_count,
        consensus_ids=[c.id for c in consensus],
        quality=_infer_quality(consensus, edges, strength),
        strength=round(strength, 4),
        outliers=outliers,
        tensions=[],
        topology=_infer_topology(claims, consensus, edges, [], strength, model_count),
        dimensions=_dimensions(claims),
        source_shape="flat",
    )


# ---------------------------------------------------------------------------
# structured shape adapter
# ---------------------------------------------------------------------------

def _resolve_reference(ref: str, claims: List[Claim]) -> str | None:
    """Find a claim by id, exact text, or text prefix (case-insensitive)."""
    needle = ref.strip().lower()
    if not needle:
        return None
    for claim in claims:
        if claim.id.lower() == needle:
            return claim.id
    for claim in claims:
        if claim.text.lower() == needle or claim.label.lower() == needle:
            return claim.id
    for claim in claims:
        if claim.text and claim.text.lower().startswith(needle):
            return claim.id
    return None


def _adapt_structured(raw: Dict[str, Any]) -> ClaimMap:
    consensus_raw = raw.get("consensus") if isinstance(raw.get("consensus"), dict) else {}
    claims: List[Claim] = []
    consensus_ids: List[str] = []
    used_ids: set = set()

    def _claim_id(preferred: Any, fallback: str) -> str:
        candidate = _text(preferred) or fallback
        while candidate in used_ids:
            candidate = candidate + "_"
        used_ids.add(candidate)
        return candidate

    for index, item in enumerate(consensus_raw.get("claims") or []):
        if not isinstance(item, dict):
            continue
        text = _text(item.get("text"))
        supporters = _supporters(item.get("supporters"))
        count = _positive_int(item.get("support_count"))
        if not supporters and count:
            supporters = list(range(count))
        claim = Claim(
            id=_claim_id(item.get("id"), f"consensus_{index + 1}"),
            label=_text(item.get("label")) or _label(text),
            text=text,
            type=_choice(item.get("type"), CLAIM_TYPES, DEFAULT_CLAIM_TYPE),
            role="anchor",
            dimension=_optional_text(item.get("dimension")),
            supporters=supporters,
            applies_when=_optional_text(item.get("applies_when")),
        )
        claims.append(claim)
        consensus_ids.append(claim.id)

    outliers: List[Outlier] = []
    for index, item in enumerate(raw.get("outliers") or []):
        if not isinstance(item, dict):
            continue
        insight = _text(item.get("insight")) or _text(item.get("text"))
        outlier_type = _choice(item.get("type"), OUTLIER_TYPES, "supplemental")
        supporters = _supporters(item.get("supporters"))
        source_index = item.get("source_index")
        if not supporters and isinstance(source_index, int) and not isinstance(source_index, bool) and source_index >= 0:
            supporters = [source_index]
        claim = Claim(
            id=_claim_id(item.get("id"), f"outlier_{index + 1}"),
            label=_label(insight),
            text=insight,
            type="contested" if outlier_type == "frame_challenger" else "speculative",
            role="challenger" if outlier_type == "frame_challenger" else "supplement",
            dimension=_optional_text(item.get("dimension")),
            supporters=supporters,
            applies_when=_optional_text(item.get("applies_when")),
            challenges=_optional_text(item.get("challenges")),
            source=_optional_text(item.get("source")),
        )
        claims.append(claim)
        outliers.append(
            Outlier(
                claim_id=claim.id,
                insight=insight,
                source=claim.source or "",
                type=outlier_type,
                dimension=claim.dimension,
                applies_when=claim.applies_when,
                challenges=claim.challenges,
            )
        )

    model_count = _model_count(_positive_int(raw.get("model_count")), claims)
    _enforce_supporter_bounds(claims, model_count)

    raw_edges: List[Dict[str, str]] = []
    for outlier in outliers:
        if not outlier.challenges:
            continue
        target = _resolve_reference(outlier.challenges, claims)
        if target and target != outlier.claim_id:
            raw_edges.append({"from": outlier.claim_id, "to": target, "type": "conflicts"})

    tensions: List[Tension] = []
    for item in raw.get("tensions") or []:
        if not isinstance(item, dict):
            continue
        between = _string_list(item.get("between"))[:2]
        if len(between) < 2:
            continue
        tension_type = _text(item.get("type")) or "conflicts"
        tensions.append(Tension(between=between, type=tension_type, axis=_text(item.get("axis")) or "general"))
        a = _resolve_reference(between[0], claims)
        b = _resolve_reference(between[1], claims)
        if a and b and a != b:
            edge_type = "tradeoff" if "tradeoff" in tension_type.lower().replace("-", "") else "conflicts"
            raw_edges.append({"from": a, "to": b, "type": edge_type})
    raw_edges.extend(item for item in (raw.get("edges") or []) if isinstance(item, dict))
    edges = _valid_edges(raw_edges, {c.id for c in claims})

    ghost = raw.get("ghost")
    ghosts = _string_list(ghost) + _string_list(raw.get("ghosts"))

    consensus = [c for c in claims if c.id in set(consensus_ids)]
    if isinstance(consensus_raw.get("strength"), (int, float)) and not isinstance(consensus_raw.get("strength"), bool):
        strength = _unit_float(consensus_raw.get("strength"))
    else:
        strength = (
            sum(c.support_count / model_count for c in consensus) / len(consensus)
            if consensus else 0.0
        )
    quality_raw = _text(consensus_raw.get("quality")).lower()
    quality = quality_raw if quality_raw in QUALITIES else _infer_quality(consensus, edges, strength)
    topology_raw = _text(raw.get("topology")).lower()
    topology = (
        topology_raw if topology_raw in TOPOLOGIES
        else _infer_topology(claims, consensus, edges, tensions, strength, model_count)
    )
    dimensions = _string_list(raw.get("dimensions_found")) or _dimensions(claims)

    return ClaimMap(
        claims=claims,
        edges=edges,
        ghosts=ghosts,
        model_count=model_count,
        consensus_ids=consensus_ids,
        quality=quality,
        strength=strength,
        outliers=outliers,
        tensions=tensions,
        topology=topology,
        dimensions=dimensions,
        source_shape="structured",
    )


def normalize_artifact(raw: Any, strict: bool = False) -> ClaimMap:
    """Normalize a mapper artifact (dict or JSON text) into a :class:`ClaimMap`.

    Malformed input yields an empty map unless ``strict`` is set, in which
    case :class:`ArtifactError` is raised.
    """
    if isinstance(raw, ClaimMap):
        return raw
    problem: str | None = None
    data: Any = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            problem = f"artifact is not valid JSON: {exc}"
    if problem is None:
        if not isinstance(data, dict):
            problem = f"artifact must be an object, got {type(data).__name__}"
        elif isinstance(data.get("claims"), list):
            return _normalize_flat(data)
        elif isinstance(data.get("consensus"), dict):
            return _adapt_structured(data)
        else:
            problem = "artifact has neither claims nor consensus"
    if strict:
        raise ArtifactError(problem)
    if raw is not None:
        logger.warning(f"Malformed artifact, using empty graph: {problem}")
    return ClaimMap.empty()


# ---------------------------------------------------------------------------
# edit overlay
# ---------------------------------------------------------------------------

@dataclass
class ArtifactEdits:
    """User edits to one turn's artifact, applied on read as an overlay."""

    turn_id: str
    added: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[Dict[str, str]] = field(default_factory=list)
    ticked_ids: List[str] = field(default_factory=list)
    ghost_override: str | None = None
    user_notes: str | None = None
    edited_at: str | None = None

    @classmethod
    def from_dict(cls, turn_id: str, data: Dict[str, Any]) -> "ArtifactEdits":
        def _claim_ids(items: Any) -> List[str]:
            ids = []
            for item in items or []:
                if isinstance(item, dict):
                    item = item.get("claim_id") or item.get("claimId") or item.get("id")
                if item:
                    ids.append(str(item))
            return ids

        modified = []
        for item in data.get("modified") or []:
            if not isinstance(item, dict):
                continue
            original = item.get("original_id") or item.get("originalId")
            edited = item.get("edited_text") or item.get("editedText")
            if original and edited:
                modified.append({"original_id": str(original), "edited_text": str(edited)})
        added = []
        for item in data.get("added") or []:
            claim = item.get("claim") if isinstance(item, dict) and isinstance(item.get("claim"), dict) else item
            if isinstance(claim, dict) and (claim.get("text") or claim.get("id")):
                added.append(dict(claim))
        return cls(
            turn_id=turn_id,
            added=added,
            removed=_claim_ids(data.get("removed")),
            modified=modified,
            ticked_ids=[str(i) for i in data.get("ticked_ids") or data.get("tickedIds") or []],
            ghost_override=_optional_text(data.get("ghost_override", data.get("ghostOverride"))),
            user_notes=_optional_text(data.get("user_notes", data.get("userNotes"))),
            edited_at=data.get("edited_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def intensity(self, original_claim_count: int) -> str:
        changes = len(self.added) + len(self.removed) + 2 * len(self.modified)
        ratio = changes / max(original_claim_count, 1)
        if ratio < 0.15:
            return "light"
        if ratio < 0.4:
            return "moderate"
        return "heavy"


def apply_edits(claim_map: ClaimMap, edits: Optional[ArtifactEdits]) -> ClaimMap:
    """Return a copy of ``claim_map`` with ``edits`` overlaid; the input is untouched."""
    result = copy.deepcopy(claim_map)
    if edits is None:
        return result
    removed = set(edits.removed)
    if removed:
        result.claims = [c for c in result.claims if c.id not in removed]
        result.edges = [e for e in result.edges if e.source not in removed and e.target not in removed]
        result.consensus_ids = [cid for cid in result.consensus_ids if cid not in removed]
        result.outliers = [o for o in result.outliers if o.claim_id not in removed]
    for change in edits.modified:
        claim = result.claim(change["original_id"])
        if claim is None:
            continue
        claim.text = change["edited_text"]
        claim.label = _label(claim.text)
        for outlier in result.outliers:
            if outlier.claim_id == claim.id:
                outlier.insight = claim.text
    existing = {c.id for c in result.claims}
    for index, item in enumerate(edits.added):
        claim_id = _text(item.get("id")) or f"user_{index + 1}"
        if claim_id in existing:
            continue
        text = _text(item.get("text"))
        result.claims.append(
            Claim(
                id=claim_id,
                label=_label(text) or claim_id,
                text=text,
                type=_choice(item.get("type"), CLAIM_TYPES, DEFAULT_CLAIM_TYPE),
                role=_choice(item.get("role"), CLAIM_ROLES, "supplement"),
                dimension=_optional_text(item.get("dimension")),
            )
        )
        existing.add(claim_id)
    if edits.ghost_override:
        result.ghosts = [edits.ghost_override]
    if edits.added or edits.removed:
        result.dimensions = [d for d in result.dimensions if d] or _dimensions(result.claims)
        for claim in result.claims:
            if claim.dimension and claim.dimension not in result.dimensions:
                result.dimensions.append(claim.dimension)
    return result
