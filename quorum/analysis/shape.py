"""Peak detection, composite shape classification and secondary patterns."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from itertools import combinations
from typing import Any, Dict, List, Sequence

from quorum.analysis.artifact import Edge
from quorum.analysis.graph import GraphAnalysis, clamp01
from quorum.analysis.metrics import CoreRatios, EnrichedClaim
from quorum.analysis.patterns import CascadeRisk

PEAK_THRESHOLD = 0.5
HILL_THRESHOLD = 0.25

SHAPES = ("sparse", "convergent", "forked", "constrained", "parallel")

TRANSFER_QUESTIONS = {
    "sparse": "What would have to be true for any of these positions to earn broad support?",
    "convergent": "What does the agreement assume that nobody stated?",
    "forked": "Which condition in your situation decides between these positions?",
    "constrained": "Which side of the tradeoff can you least afford to give up?",
    "parallel": "Which of these independent dimensions matters most for your decision?",
}


@dataclass
class SecondaryPattern:
    type: str
    severity: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ShapeClassification:
    primary: str = "sparse"
    confidence: float = 0.0
    peaks: List[str] = field(default_factory=list)
    hills: List[str] = field(default_factory=list)
    peak_relationship: str = "none"
    peak_pair_relations: List[Dict[str, str]] = field(default_factory=list)
    evidence: List[str] = field(default_factory=list)
    transfer_question: str = ""
    signal_strength: float = 0.0
    scores: Dict[str, float] = field(default_factory=dict)
    patterns: List[SecondaryPattern] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_peak(claim: EnrichedClaim) -> bool:
    return claim.support_ratio > PEAK_THRESHOLD


def is_hill(claim: EnrichedClaim) -> bool:
    return HILL_THRESHOLD < claim.support_ratio <= PEAK_THRESHOLD


def _relation(a: str, b: str, edges: Sequence[Edge]) -> str:
    kinds = {e.type for e in edges if {e.source, e.target} == {a, b}}
    if "conflicts" in kinds:
        return "conflicts"
    if "tradeoff" in kinds:
        return "tradeoff"
    if kinds & {"supports", "prerequisite"}:
        return "supports"
    return "none"


def _peak_relationship(relations: List[Dict[str, str]], peak_count: int) -> str:
    if peak_count < 2:
        return "none"
    kinds = {r["relation"] for r in relations}
    if "conflicts" in kinds:
        return "conflicting"
    if "tradeoff" in kinds:
        return "trading-off"
    if "supports" in kinds:
        return "supporting"
    return "independent"


def _component_of(graph: GraphAnalysis) -> Dict[str, int]:
    lookup = {}
    for index, component in enumerate(graph.components):
        for claim_id in component:
            lookup[claim_id] = index
    return lookup


def _category_scores(
    claims: Sequence[EnrichedClaim],
    peaks: Sequence[EnrichedClaim],
    relations: List[Dict[str, str]],
    ratios: CoreRatios,
    peak_components: int,
) -> Dict[str, float]:
    max_ratio = max((c.support_ratio for c in claims), default=0.0)
    pair_count = max(1, len(relations))
    conflict_share = sum(1 for r in relations if r["relation"] == "conflicts") / pair_count
    tradeoff_share = sum(1 for r in relations if r["relation"] == "tradeoff") / pair_count
    spread = (peak_components - 1) / (len(peaks) - 1) if len(peaks) > 1 else 0.0
    return {
        "sparse": clamp01(1 - max_ratio),
        "convergent": clamp01(0.4 * max_ratio + 0.3 * ratios.alignment + 0.3 * (1 - ratios.tension)),
        "forked": clamp01(0.6 * conflict_share + 0.4 * ratios.tension),
        "constrained": clamp01(0.6 * tradeoff_share + 0.4 * ratios.tension),
        "parallel": clamp01(0.6 * spread + 0.4 * ratios.fragmentation),
    }


def classify_shape(
    claims: Sequence[EnrichedClaim],
    edges: Sequence[Edge],
    graph: GraphAnalysis,
    ratios: CoreRatios,
    signal: float,
) -> ShapeClassification:
    """Peak-first classification: without a peak the shape is always sparse."""
    peaks = [c for c in claims if is_peak(c)]
    hills = [c for c in claims if is_hill(c)]
    relations = [
        {"a": a.id, "b": b.id, "relation": _relation(a.id, b.id, edges)}
        for a, b in combinations(peaks, 2)
    ]
    components = _component_of(graph)
    peak_components = len({components.get(p.id, -1) for p in peaks})

    if not peaks:
        primary = "sparse"
    elif any(r["relation"] == "conflicts" for r in relations):
        primary = "forked"
    elif any(r["relation"] == "tradeoff" for r in relations):
        primary = "constrained"
    elif len(peaks) == 1 or peak_components == 1:
        primary = "convergent"
    else:
        primary = "parallel"

    scores = _category_scores(claims, peaks, relations, ratios, peak_components)
    runner_up = max(score for shape, score in scores.items() if shape != primary)
    margin = scores[primary] - runner_up
    confidence = clamp01(0.5 * signal + 0.5 * clamp01(0.5 + margin))

    evidence = []
    if peaks:
        evidence.append(f"{len(peaks)} peak(s) above {PEAK_THRESHOLD:.0%} support")
    else:
        top = max((c.support_ratio for c in claims), default=0.0)
        evidence.append(f"No claim above {PEAK_THRESHOLD:.0%} support (max {top:.0%})")
    if hills:
        evidence.append(f"{len(hills)} hill(s) between {HILL_THRESHOLD:.0%} and {PEAK_THRESHOLD:.0%}")
    for relation in relations:
        if relation["relation"] in ("conflicts", "tradeoff"):
            evidence.append(f"Peaks {relation['a']} and {relation['b']}: {relation['relation']}")
    if primary == "parallel":
        evidence.append(f"Peaks spread across {peak_components} disconnected components")
    evidence.append(f"Signal strength {signal:.2f}")
    if ratios.tension > 0:
        evidence.append(f"Tension ratio {ratios.tension:.2f}")

    return ShapeClassification(
        primary=primary,
        confidence=round(confidence, 4),
        peaks=[p.id for p in peaks],
        hills=[h.id for h in hills],
        peak_relationship=_peak_relationship(relations, len(peaks)),
        peak_pair_relations=relations,
        evidence=evidence,
        transfer_question=TRANSFER_QUESTIONS[primary],
        signal_strength=round(signal, 4),
        scores={k: round(v, 4) for k, v in scores.items()},
    )


# ---------------------------------------------------------------------------
# secondary detectors
# ---------------------------------------------------------------------------

def _targets(claim_id: str, edges: Sequence[Edge], types: Sequence[str]) -> List[str]:
    return [e.target for e in edges if e.source == claim_id and e.type in types]


def detect_dissent(claims: Sequence[EnrichedClaim], edges: Sequence[Edge]) -> SecondaryPattern | None:
    peak_ids = {c.id for c in claims if is_peak(c)}
    voices = []
    for claim in claims:
        if claim.id in peak_ids:
            continue
        if claim.is_leverage_inversion:
            insight = "leverage_inversion"
        elif claim.role == "challenger":
            insight = "explicit_challenger"
        elif claim.applies_when or claim.type == "conditional":
            insight = "edge_case"
        elif len(claim.supporters) == 1 and claim.support_ratio <= HILL_THRESHOLD:
            insight = "unique_perspective"
        else:
            continue
        targets = _targets(claim.id, edges, ("conflicts", "prerequisite"))
        voices.append({
            "id": claim.id,
            "label": claim.label,
            "insight_type": insight,
            "support_ratio": claim.support_ratio,
            "leverage": claim.leverage,
            "targets": targets,
        })
    if not voices:
        return None
    strongest = max(voices, key=lambda v: v["leverage"])
    if any(t in peak_ids for t in strongest["targets"]):
        severity = "high"
    elif any(v["insight_type"] in ("explicit_challenger", "leverage_inversion") for v in voices):
        severity = "medium"
    else:
        severity = "low"
    return SecondaryPattern("dissent", severity, {"voices": voices, "strongest_voice": strongest["id"]})


def detect_keystone(
    claims: Sequence[EnrichedClaim],
    graph: GraphAnalysis,
    cascade_risks: Sequence[CascadeRisk],
) -> SecondaryPattern | None:
    cascades = {risk.source_id: risk for risk in cascade_risks}
    candidates = [c for c in claims if c.is_keystone]
    if not candidates and graph.hub_claim:
        candidates = [c for c in claims if c.id == graph.hub_claim and c.id in cascades]
    candidates = [c for c in candidates if c.id in cascades and len(cascades[c.id].dependent_ids) >= 2]
    if not candidates:
        return None
    keystone = max(candidates, key=lambda c: (c.keystone_score, len(cascades[c.id].dependent_ids)))
    risk = cascades[keystone.id]
    size = len(risk.dependent_ids)
    return SecondaryPattern(
        "keystone",
        "high" if size >= 3 else "medium",
        {
            "keystone": keystone.id,
            "label": keystone.label,
            "support_ratio": keystone.support_ratio,
            "dependents": list(risk.dependent_ids),
            "cascade_size": size,
        },
    )


def detect_fragile_chain(
    claims: Sequence[EnrichedClaim],
    edges: Sequence[Edge],
    graph: GraphAnalysis,
) -> SecondaryPattern | None:
    by_id = {c.id: c for c in claims}
    chain = list(graph.longest_chain)
    weak_links = [cid for cid in chain if cid in by_id and by_id[cid].support_ratio <= PEAK_THRESHOLD]
    fragilities = []
    for edge in edges:
        if edge.type != "prerequisite":
            continue
        foundation, peak = by_id.get(edge.source), by_id.get(edge.target)
        if peak is None or foundation is None:
            continue
        if is_peak(peak) and foundation.support_ratio <= HILL_THRESHOLD:
            fragilities.append({"peak": peak.id, "weak_foundation": foundation.id})
    long_and_weak = len(chain) >= 3 and bool(weak_links)
    if not long_and_weak and not fragilities:
        return None
    if fragilities:
        severity = "high"
    elif len(weak_links) * 2 > len(chain):
        severity = "medium"
    else:
        severity = "low"
    return SecondaryPattern(
        "fragile_chain",
        severity,
        {
            "chain": chain if long_and_weak else [],
            "length": len(chain) if long_and_weak else 0,
            "weak_links": weak_links if long_and_weak else [],
            "fragilities": fragilities,
        },
    )


def detect_challenged(claims: Sequence[EnrichedClaim], edges: Sequence[Edge]) -> SecondaryPattern | None:
    by_id = {c.id: c for c in claims}
    pairs = []
    for edge in edges:
        if edge.type != "conflicts":
            continue
        for challenger_id, target_id in ((edge.source, edge.target), (edge.target, edge.source)):
            challenger, target = by_id.get(challenger_id), by_id.get(target_id)
            if challenger is None or target is None:
                continue
            if challenger.role != "challenger" and not challenger.is_challenger:
                continue
            if target.support_ratio <= HILL_THRESHOLD:
                continue
            pair = {"challenger": challenger.id, "target": target.id}
            if pair not in pairs:
                pairs.append(pair)
    if not pairs:
        return None
    peak_targets = [p for p in pairs if is_peak(by_id[p["target"]])]
    if any(by_id[p["challenger"]].is_challenger or by_id[p["challenger"]].is_leverage_inversion for p in peak_targets):
        severity = "high"
    elif peak_targets:
        severity = "medium"
    else:
        severity = "low"
    return SecondaryPattern("challenged", severity, {"challenges": pairs})


def detect_conditional(claims: Sequence[EnrichedClaim], edges: Sequence[Edge]) -> SecondaryPattern | None:
    by_id = {c.id: c for c in claims}
    conditions = []
    for claim in claims:
        if not claim.applies_when and claim.type != "conditional":
            continue
        conditions.append({
            "id": claim.id,
            "label": claim.label,
            "applies_when": claim.applies_when,
            "branches": _targets(claim.id, edges, ("prerequisite",)),
        })
    if not conditions:
        return None
    gates_peak = any(is_peak(by_id[b]) for c in conditions for b in c["branches"] if b in by_id)
    severity = "medium" if gates_peak or len(conditions) >= 2 else "low"
    return SecondaryPattern("conditional", severity, {"conditions": conditions})


def detect_orphaned(claims: Sequence[EnrichedClaim], edges: Sequence[Edge]) -> SecondaryPattern | None:
    if not edges:
        return None
    orphans = []
    for claim in claims:
        if not claim.is_isolated:
            continue
        reason = "high_support_isolated" if claim.support_ratio > HILL_THRESHOLD else "unconnected"
        orphans.append({
            "id": claim.id,
            "label": claim.label,
            "support_ratio": claim.support_ratio,
            "reason": reason,
        })
    if not orphans:
        return None
    severity = "medium" if any(o["reason"] == "high_support_isolated" for o in orphans) else "low"
    return SecondaryPattern("orphaned", severity, {"orphans": orphans})


def detect_secondary_patterns(
    claims: Sequence[EnrichedClaim],
    edges: Sequence[Edge],
    graph: GraphAnalysis,
    cascade_risks: Sequence[CascadeRisk],
) -> List[SecondaryPattern]:
    found = [
        detect_dissent(claims, edges),
        detect_keystone(claims, graph, cascade_risks),
        detect_fragile_chain(claims, edges, graph),
        detect_challenged(claims, edges),
        detect_conditional(claims, edges),
        detect_orphaned(claims, edges),
    ]
    return [pattern for pattern in found if pattern is not None]
