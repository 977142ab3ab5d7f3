"""Landscape descriptors, per-claim ratios and the five core ratios.

Claim flags are percentile based and computed in two passes: raw scores
for every claim first, then flags against this turn's own distribution.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Sequence, Set

from quorum.analysis.artifact import Claim, ClaimMap, Edge
from quorum.analysis.graph import GraphAnalysis, REINFORCING, clamp01

ROLE_WEIGHTS = {
    "challenger": 4.0,
    "anchor": 2.0,
    "branch": 1.0,
    "supplement": 0.5,
}

TOP_SHARE = 0.3


@dataclass
class Landscape:
    dominant_type: str = "prescriptive"
    type_distribution: Dict[str, int] = field(default_factory=dict)
    dominant_role: str = "anchor"
    role_distribution: Dict[str, int] = field(default_factory=dict)
    claim_count: int = 0
    model_count: int = 1
    convergence_ratio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnrichedClaim:
    id: str
    label: str
    text: str
    type: str
    role: str
    dimension: str | None
    supporters: List[int]
    applies_when: str | None = None
    challenges: str | None = None
    support_ratio: float = 0.0
    leverage: float = 0.0
    leverage_factors: Dict[str, float] = field(default_factory=dict)
    keystone_score: float = 0.0
    evidence_gap_score: float = 0.0
    support_skew: float = 0.0
    in_degree: int = 0
    out_degree: int = 0
    is_chain_root: bool = False
    is_chain_terminal: bool = False
    is_high_support: bool = False
    is_leverage_inversion: bool = False
    is_keystone: bool = False
    is_evidence_gap: bool = False
    is_outlier: bool = False
    is_contested: bool = False
    is_conditional: bool = False
    is_challenger: bool = False
    is_isolated: bool = False

    @property
    def support_count(self) -> int:
        return len(self.supporters)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CoreRatios:
    concentration: float = 0.0
    alignment: float = 0.5
    tension: float = 0.0
    fragmentation: float = 0.0
    depth: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def percentile_threshold(values: Sequence[float], percentile: float) -> float:
    """Value at ``floor(n * percentile)`` of the sorted values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(int(math.floor(len(ordered) * percentile)), len(ordered) - 1)
    return ordered[index]


def in_top(value: float, values: Sequence[float], share: float) -> bool:
    return value >= percentile_threshold(values, 1 - share)


def in_bottom(value: float, values: Sequence[float], share: float) -> bool:
    return value <= percentile_threshold(values, share)


def top_n(total: int, share: float = TOP_SHARE) -> int:
    return max(1, math.ceil(total * share))


def top_claim_ids(claims: Sequence[Any]) -> Set[str]:
    """Ids of the top 30% of claims by supporter count (stable order)."""
    if not claims:
        return set()
    ordered = sorted(claims, key=lambda c: -len(c.supporters))
    return {c.id for c in ordered[: top_n(len(claims))]}


def compute_landscape(claim_map: ClaimMap) -> Landscape:
    types = Counter(c.type for c in claim_map.claims)
    roles = Counter(c.role for c in claim_map.claims)
    total = len(claim_map.claims)
    return Landscape(
        dominant_type=types.most_common(1)[0][0] if types else "prescriptive",
        type_distribution=dict(types),
        dominant_role=roles.most_common(1)[0][0] if roles else "anchor",
        role_distribution=dict(roles),
        claim_count=total,
        model_count=max(claim_map.model_count, 1),
        convergence_ratio=len(claim_map.consensus_ids) / total if total else 0.0,
    )


def model_footprints(claims: Sequence[Claim]) -> Dict[int, int]:
    """How many claims each model index supports across the map."""
    return dict(Counter(idx for claim in claims for idx in claim.supporters))


def support_skew(supporters: Sequence[int], footprints: Dict[int, int]) -> float:
    """Share of a claim's backing that comes from its most prolific supporter.

    Each supporter is weighted by its model footprint, so evenly backed
    claims sit at ``1 / len(supporters)`` and claims carried by one model
    that endorses most of the map approach 1.
    """
    weights = [footprints.get(idx, 1) for idx in supporters]
    total = sum(weights)
    return max(weights) / total if total else 0.0


def compute_claim_ratios(
    claim: Claim,
    edges: Sequence[Edge],
    model_count: int,
    footprints: Dict[int, int] | None = None,
) -> EnrichedClaim:
    safe_models = max(model_count, 1)
    supporters = list(claim.supporters)
    support_ratio = len(supporters) / safe_models

    outgoing = [e for e in edges if e.source == claim.id]
    incoming = [e for e in edges if e.target == claim.id]
    prereq_out = sum(1 for e in outgoing if e.type == "prerequisite")
    prereq_in = sum(1 for e in incoming if e.type == "prerequisite")
    conflicts = sum(1 for e in edges if e.type == "conflicts" and e.touches(claim.id))

    support_weight = support_ratio * 2
    role_weight = ROLE_WEIGHTS.get(claim.role, 1.0)
    connectivity = prereq_out * 2 + prereq_in + conflicts * 1.5 + (len(outgoing) + len(incoming)) * 0.25
    is_root = prereq_in == 0 and prereq_out > 0
    position = 2.0 if is_root else 0.0

    skew = support_skew(supporters, footprints if footprints is not None else {})

    return EnrichedClaim(
        id=claim.id,
        label=claim.label,
        text=claim.text,
        type=claim.type,
        role=claim.role,
        dimension=claim.dimension,
        supporters=supporters,
        applies_when=claim.applies_when,
        challenges=claim.challenges,
        support_ratio=support_ratio,
        leverage=support_weight + role_weight + connectivity + position,
        leverage_factors={
            "support_weight": support_weight,
            "role_weight": role_weight,
            "connectivity_weight": connectivity,
            "position_weight": position,
        },
        keystone_score=float(len(outgoing) * len(supporters)),
        support_skew=skew,
        in_degree=len(incoming),
        out_degree=len(outgoing),
        is_chain_root=is_root,
        is_chain_terminal=prereq_in > 0 and prereq_out == 0,
    )


def assign_percentile_flags(
    claims: List[EnrichedClaim],
    edges: Sequence[Edge],
    cascade_dependents: Dict[str, int],
    top_ids: Set[str],
) -> List[EnrichedClaim]:
    """Second pass: flags relative to this claim set's distribution."""
    support_ratios = [c.support_ratio for c in claims]
    leverages = [c.leverage for c in claims]
    keystones = [c.keystone_score for c in claims]
    # A single supporter has no distribution to skew.
    skews = [c.support_skew for c in claims if len(c.supporters) >= 2]

    for claim in claims:
        dependents = cascade_dependents.get(claim.id, 0)
        claim.evidence_gap_score = dependents / len(claim.supporters) if claim.supporters else 0.0
    gaps = [c.evidence_gap_score for c in claims]

    connected = {e.source for e in edges} | {e.target for e in edges}
    for claim in claims:
        prereq_out = sum(1 for e in edges if e.source == claim.id and e.type == "prerequisite")
        low_support = in_bottom(claim.support_ratio, support_ratios, 0.3)

        claim.is_high_support = in_top(claim.support_ratio, support_ratios, 0.3)
        claim.is_leverage_inversion = low_support and in_top(claim.leverage, leverages, 0.25)
        claim.is_keystone = (
            in_top(claim.keystone_score, keystones, 0.2)
            and claim.out_degree >= 2
            and prereq_out >= 2
        )
        claim.is_evidence_gap = claim.evidence_gap_score > 0 and in_top(claim.evidence_gap_score, gaps, 0.2)
        claim.is_outlier = len(claim.supporters) >= 2 and in_top(claim.support_skew, skews, 0.2)
        claim.is_contested = any(e.type == "conflicts" and e.touches(claim.id) for e in edges)
        claim.is_conditional = any(e.type == "prerequisite" and e.target == claim.id for e in edges)
        claim.is_challenger = low_support and claim.role == "challenger" and any(
            e.source == claim.id and e.target in top_ids and e.type in ("conflicts", "prerequisite")
            for e in edges
        )
        claim.is_isolated = claim.id not in connected
    return claims


def compute_core_ratios(
    claims: Sequence[EnrichedClaim],
    edges: Sequence[Edge],
    graph: GraphAnalysis,
) -> CoreRatios:
    total = len(claims)
    if total == 0:
        return CoreRatios()

    top_ids = top_claim_ids(claims)
    support_mass = sum(len(c.supporters) for c in claims)
    top_mass = sum(len(c.supporters) for c in claims if c.id in top_ids)
    concentration = top_mass / support_mass if support_mass else 0.0

    top_edges = [e for e in edges if e.source in top_ids and e.target in top_ids]
    reinforcing = sum(1 for e in top_edges if e.type in REINFORCING)
    alignment = reinforcing / len(top_edges) if top_edges else 0.5

    tension_edges = sum(1 for e in edges if e.type in ("conflicts", "tradeoff"))
    tension = tension_edges / len(edges) if edges else 0.0

    fragmentation = 1 - graph.largest_component_size / total
    depth = len(graph.longest_chain) / total

    return CoreRatios(
        concentration=clamp01(concentration),
        alignment=clamp01(alignment),
        tension=clamp01(tension),
        fragmentation=clamp01(fragmentation),
        depth=clamp01(depth),
    )
