"""Structural detectors over enriched claims and edges."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Sequence, Set

from quorum.analysis.artifact import Edge
from quorum.analysis.metrics import EnrichedClaim

SYMMETRIC_SUPPORT_DELTA = 0.15


@dataclass
class CascadeRisk:
    source_id: str
    source_label: str
    dependent_ids: List[str]
    dependent_labels: List[str]
    depth: int


@dataclass
class LeverageInversion:
    claim_id: str
    claim_label: str
    supporter_count: int
    reason: str
    affected_claims: List[str] = field(default_factory=list)


@dataclass
class ConflictPair:
    claim_a: Dict[str, Any]
    claim_b: Dict[str, Any]
    is_both_consensus: bool
    dynamics: str


@dataclass
class TradeoffPair:
    claim_a: Dict[str, Any]
    claim_b: Dict[str, Any]
    symmetry: str


@dataclass
class ConvergencePoint:
    target_id: str
    target_label: str
    source_ids: List[str]
    source_labels: List[str]
    edge_type: str


@dataclass
class GhostAnalysis:
    count: int = 0
    may_extend_challenger: bool = False
    challenger_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StructuralPatterns:
    leverage_inversions: List[LeverageInversion] = field(default_factory=list)
    cascade_risks: List[CascadeRisk] = field(default_factory=list)
    conflicts: List[ConflictPair] = field(default_factory=list)
    tradeoffs: List[TradeoffPair] = field(default_factory=list)
    convergence_points: List[ConvergencePoint] = field(default_factory=list)
    isolated_claims: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _brief(claim: EnrichedClaim) -> Dict[str, Any]:
    return {"id": claim.id, "label": claim.label, "supporter_count": len(claim.supporters)}


def _cascade_depth(source_id: str, by_source: Dict[str, List[str]]) -> int:
    visited: Set[str] = set()
    deepest = 0
    stack = [(source_id, 0)]
    while stack:
        node, depth = stack.pop()
        if node in visited:
            continue
        visited.add(node)
        deepest = max(deepest, depth)
        for child in by_source.get(node, []):
            stack.append((child, depth + 1))
    return deepest


def detect_cascade_risks(edges: Sequence[Edge], labels: Dict[str, str]) -> List[CascadeRisk]:
    by_source: Dict[str, List[str]] = {}
    for edge in edges:
        if edge.type == "prerequisite":
            by_source.setdefault(edge.source, []).append(edge.target)

    risks = []
    for source_id, direct in by_source.items():
        dependents: List[str] = []
        seen: Set[str] = {source_id}
        queue = deque(direct)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            dependents.append(current)
            queue.extend(by_source.get(current, []))
        if not dependents:
            continue
        risks.append(
            CascadeRisk(
                source_id=source_id,
                source_label=labels.get(source_id, source_id),
                dependent_ids=dependents,
                dependent_labels=[labels.get(d, d) for d in dependents],
                depth=_cascade_depth(source_id, by_source),
            )
        )
    return risks


def detect_leverage_inversions(
    claims: Sequence[EnrichedClaim],
    edges: Sequence[Edge],
    top_ids: Set[str],
) -> List[LeverageInversion]:
    inversions = []
    for claim in claims:
        if not claim.is_leverage_inversion:
            continue
        prereq_to = [e.target for e in edges if e.type == "prerequisite" and e.source == claim.id]
        high_targets = [t for t in prereq_to if t in top_ids]
        if claim.role == "challenger" and high_targets:
            reason, affected = "challenger_prerequisite_to_consensus", high_targets
        elif prereq_to:
            reason, affected = "singular_foundation", prereq_to
        elif claim.leverage_factors.get("connectivity_weight", 0.0) > claim.leverage * 0.4:
            reason, affected = "high_connectivity_low_support", []
        else:
            continue
        inversions.append(
            LeverageInversion(
                claim_id=claim.id,
                claim_label=claim.label,
                supporter_count=len(claim.supporters),
                reason=reason,
                affected_claims=affected,
            )
        )
    return inversions


def detect_conflicts(
    edges: Sequence[Edge],
    by_id: Dict[str, EnrichedClaim],
    top_ids: Set[str],
) -> List[ConflictPair]:
    pairs = []
    for edge in edges:
        if edge.type != "conflicts":
            continue
        a, b = by_id.get(edge.source), by_id.get(edge.target)
        if a is None or b is None:
            continue
        delta = abs(a.support_ratio - b.support_ratio)
        pairs.append(
            ConflictPair(
                claim_a=_brief(a),
                claim_b=_brief(b),
                is_both_consensus=a.id in top_ids and b.id in top_ids,
                dynamics="symmetric" if delta < SYMMETRIC_SUPPORT_DELTA else "asymmetric",
            )
        )
    return pairs


def detect_tradeoffs(
    edges: Sequence[Edge],
    by_id: Dict[str, EnrichedClaim],
    top_ids: Set[str],
) -> List[TradeoffPair]:
    pairs = []
    for edge in edges:
        if edge.type != "tradeoff":
            continue
        a, b = by_id.get(edge.source), by_id.get(edge.target)
        if a is None or b is None:
            continue
        a_top, b_top = a.id in top_ids, b.id in top_ids
        if a_top and b_top:
            symmetry = "both_consensus"
        elif not a_top and not b_top:
            symmetry = "both_singular"
        else:
            symmetry = "asymmetric"
        pairs.append(TradeoffPair(claim_a=_brief(a), claim_b=_brief(b), symmetry=symmetry))
    return pairs


def detect_convergence_points(
    edges: Sequence[Edge],
    by_id: Dict[str, EnrichedClaim],
) -> List[ConvergencePoint]:
    grouped: Dict[tuple, List[str]] = {}
    for edge in edges:
        if edge.type in ("prerequisite", "supports"):
            grouped.setdefault((edge.target, edge.type), []).append(edge.source)
    points = []
    for (target, edge_type), sources in grouped.items():
        if len(sources) < 2:
            continue
        points.append(
            ConvergencePoint(
                target_id=target,
                target_label=by_id[target].label if target in by_id else target,
                source_ids=sources,
                source_labels=[by_id[s].label for s in sources if s in by_id],
                edge_type=edge_type,
            )
        )
    return points


def analyze_ghosts(ghosts: Sequence[str], claims: Sequence[EnrichedClaim]) -> GhostAnalysis:
    challengers = [c.id for c in claims if c.role == "challenger" or c.is_challenger]
    return GhostAnalysis(
        count=len(ghosts),
        may_extend_challenger=bool(ghosts) and bool(challengers),
        challenger_ids=challengers,
    )


def detect_patterns(
    claims: Sequence[EnrichedClaim],
    edges: Sequence[Edge],
    cascade_risks: List[CascadeRisk],
    top_ids: Set[str],
) -> StructuralPatterns:
    by_id = {c.id: c for c in claims}
    return StructuralPatterns(
        leverage_inversions=detect_leverage_inversions(claims, edges, top_ids),
        cascade_risks=cascade_risks,
        conflicts=detect_conflicts(edges, by_id, top_ids),
        tradeoffs=detect_tradeoffs(edges, by_id, top_ids),
        convergence_points=detect_convergence_points(edges, by_id),
        isolated_claims=[c.id for c in claims if c.is_isolated],
    )
