"""Query classification, container selection and dimension-first exploration.

Everything here is a pure function of ``(query, artifact)``; no model call.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence

from quorum.analysis.artifact import ClaimMap, Outlier, normalize_artifact

# Ordered: first match wins.
QUERY_RULES = [
    ("informational", re.compile(r"^(what is|define|explain|describe|tell me about|what are)\b")),
    ("procedural", re.compile(r"^(how do i|how to|steps to|guide|show me how|walk me through)\b")),
    ("advisory", re.compile(r"^(should i|what's best|what is best|recommend|which should|what do you suggest)\b")),
    ("comparative", re.compile(r"(compare|vs|versus|difference between|or|better|worse|which is)\b")),
    ("creative", re.compile(r"^(write|create|generate|brainstorm|come up with|design|build)\b")),
    ("predictive", re.compile(r"(what if|will .* happen|predict|forecast|future of|what will)\b")),
    ("interpretive", re.compile(r"(why did|what caused|meaning of|significance|interpret)\b")),
]

ACTIONABLE_PATTERNS = [
    re.compile(r"^(use|start|build|create|position|open-source|leverage)"),
    re.compile(r"step \d|first,|then,|finally,"),
    re.compile(r"by \w+ing"),
]
SPECIFIC_PATTERNS = [
    re.compile(r"e\.g\.|for example|such as"),
    re.compile(r"when .{10,}"),
    re.compile(r"if .{10,}"),
    re.compile(r'"[^"]+"'),
]
CAUSAL = re.compile(r"because|since|therefore|thus")

STATUS_RANK = {"gap": 0, "contested": 1, "settled": 2}
RECOMMENDED_COUNT = 3
MAX_ELEVATION = 10


@dataclass
class DimensionSummary:
    name: str
    winner: str
    support: int
    alternatives: List[str] = field(default_factory=list)


@dataclass
class ExploreCondition:
    condition: str
    then: str
    source: str
    challenges: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"if": self.condition, "then": self.then, "source": self.source, "challenges": self.challenges}


@dataclass
class Paradigm:
    name: str
    source: str
    core_idea: str
    challenges: str | None = None


@dataclass
class ExploreConflict:
    between: List[str]
    type: str
    axis: str = "general"


@dataclass
class DimensionCoverage:
    dimension: str
    consensus_claims: int
    outlier_claims: int
    is_gap: bool
    is_contested: bool
    status: str
    leader: str | None = None
    leader_source: str | None = None
    support_bar: int | None = None


@dataclass
class EnrichedOutlier:
    claim_id: str
    insight: str
    source: str
    type: str
    dimension: str | None
    applies_when: str | None
    challenges: str | None
    elevation_score: int = 0
    covers_consensus_gap: bool = False
    specificity: str = "vague"
    is_recommended: bool = False


@dataclass
class ExploreAnalysis:
    query_type: str
    container_type: str
    escape_velocity: bool
    dimensions: List[DimensionSummary] = field(default_factory=list)
    conditions: List[ExploreCondition] = field(default_factory=list)
    paradigms: List[Paradigm] = field(default_factory=list)
    conflicts: List[ExploreConflict] = field(default_factory=list)
    dimension_coverage: List[DimensionCoverage] = field(default_factory=list)
    recommended_outliers: List[EnrichedOutlier] = field(default_factory=list)
    all_outliers: List[EnrichedOutlier] = field(default_factory=list)
    summary_bar: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["conditions"] = [c.to_dict() for c in self.conditions]
        return data


def classify_query_type(query: str) -> str:
    q = (query or "").lower().strip()
    for query_type, pattern in QUERY_RULES:
        if pattern.search(q):
            return query_type
    return "general"


def check_escape_velocity(claim_map: ClaimMap) -> bool:
    if claim_map.quality != "resolved":
        return False
    if claim_map.strength < 0.9:
        return False
    if claim_map.topology != "high_confidence":
        return False
    return not claim_map.frame_challengers()


def _has_conditions(claim_map: ClaimMap) -> bool:
    return any(o.applies_when for o in claim_map.outliers) or any(
        c.applies_when for c in claim_map.consensus_claims()
    )


def select_container(claim_map: ClaimMap, query_type: str) -> str:
    topology = claim_map.topology
    if check_escape_velocity(claim_map):
        return "direct_answer"
    if topology == "dimensional":
        return "comparison_matrix"
    if topology == "contested" and len(claim_map.frame_challengers()) >= 2:
        return "exploration_space"

    has_conditions = _has_conditions(claim_map)
    if query_type == "advisory" and has_conditions:
        return "decision_tree"
    if query_type == "comparative":
        return "comparison_matrix"
    if query_type == "creative":
        return "exploration_space"
    if query_type == "informational" and topology == "contested":
        return "exploration_space"
    if query_type == "procedural" and topology == "high_confidence":
        return "direct_answer"
    if has_conditions:
        return "decision_tree"
    if topology == "high_confidence":
        return "direct_answer"
    return "comparison_matrix"


def build_dimension_matrix(claim_map: ClaimMap) -> List[DimensionSummary]:
    grouped: Dict[str, Dict[str, Any]] = {}
    for claim in claim_map.consensus_claims():
        if not claim.dimension:
            continue
        entry = grouped.setdefault(claim.dimension, {"claims": [], "support": 0})
        entry["claims"].append((claim.text, len(claim.supporters)))
        entry["support"] += claim.support_count
    for outlier in claim_map.outliers:
        if not outlier.dimension:
            continue
        entry = grouped.setdefault(outlier.dimension, {"claims": [], "support": 0})
        entry["claims"].append((outlier.insight, 0))

    matrix = []
    for name, entry in grouped.items():
        claims = entry["claims"]
        winner_index = 0
        for index, (_, support) in enumerate(claims):
            if support > claims[winner_index][1]:
                winner_index = index
        matrix.append(
            DimensionSummary(
                name=name,
                winner=claims[winner_index][0],
                support=entry["support"],
                alternatives=[text for i, (text, _) in enumerate(claims) if i != winner_index],
            )
        )
    return matrix


def extract_conditions(claim_map: ClaimMap) -> List[ExploreCondition]:
    conditions = [
        ExploreCondition(o.applies_when, o.insight, o.source, o.challenges)
        for o in claim_map.outliers
        if o.applies_when
    ]
    for claim in claim_map.consensus_claims():
        if claim.applies_when:
            conditions.append(
                ExploreCondition(claim.applies_when, claim.text, f"Consensus ({claim.support_count} models)")
            )
    return conditions


def extract_paradigms(claim_map: ClaimMap) -> List[Paradigm]:
    paradigms = []
    for outlier in claim_map.frame_challengers():
        name = outlier.insight[:50] + ("..." if len(outlier.insight) > 50 else "")
        paradigms.append(Paradigm(name, outlier.source, outlier.insight, outlier.challenges))
    return paradigms


def extract_conflicts(claim_map: ClaimMap) -> List[ExploreConflict]:
    conflicts = [ExploreConflict(list(t.between), t.type, t.axis) for t in claim_map.tensions]
    for outlier in claim_map.outliers:
        if outlier.challenges:
            conflicts.append(
                ExploreConflict([outlier.insight, outlier.challenges], "challenges", outlier.dimension or "general")
            )
    return conflicts


def compute_specificity(text: str) -> str:
    lower = text.lower()
    if any(p.search(lower) for p in ACTIONABLE_PATTERNS):
        return "actionable"
    if any(p.search(lower) for p in SPECIFIC_PATTERNS):
        return "specific"
    if len(text) > 80 and CAUSAL.search(lower):
        return "moderate"
    return "vague"


def compute_outlier_elevation(
    outlier: Outlier,
    consensus_dimensions: set,
    all_outliers: Sequence[Outlier],
) -> EnrichedOutlier:
    score = 0
    if outlier.is_frame_challenger:
        score += 3
    covers_gap = bool(outlier.dimension) and outlier.dimension not in consensus_dimensions
    if covers_gap:
        score += 2
    if outlier.applies_when and len(outlier.applies_when) > 10:
        score += 1
    if outlier.challenges:
        score += 1
    specificity = compute_specificity(outlier.insight)
    if specificity == "actionable":
        score += 2
    elif specificity == "specific":
        score += 1
    same_dimension = sum(1 for o in all_outliers if o.dimension == outlier.dimension)
    if outlier.dimension and same_dimension == 1:
        score += 1

    return EnrichedOutlier(
        claim_id=outlier.claim_id,
        insight=outlier.insight,
        source=outlier.source,
        type=outlier.type,
        dimension=outlier.dimension,
        applies_when=outlier.applies_when,
        challenges=outlier.challenges,
        elevation_score=min(score, MAX_ELEVATION),
        covers_consensus_gap=covers_gap,
        specificity=specificity,
    )


def compute_dimension_coverage(claim_map: ClaimMap) -> List[DimensionCoverage]:
    consensus = claim_map.consensus_claims()
    coverage = []
    for dimension in claim_map.dimensions:
        in_consensus = [c for c in consensus if c.dimension == dimension]
        in_outliers = [o for o in claim_map.outliers if o.dimension == dimension]
        has_challenger = any(o.is_frame_challenger for o in in_outliers)

        is_gap = not in_consensus and bool(in_outliers)
        is_contested = bool(in_consensus) and bool(in_outliers)
        if is_gap:
            status = "gap"
        elif is_contested or has_challenger:
            status = "contested"
        else:
            status = "settled"

        leader = leader_source = None
        support_bar = None
        if in_consensus:
            top = in_consensus[0]
            for claim in in_consensus[1:]:
                if claim.support_count > top.support_count:
                    top = claim
            leader = top.text
            leader_source = f"{top.support_count} models"
            support_bar = top.support_count
        elif in_outliers:
            leader = in_outliers[0].insight
            leader_source = in_outliers[0].source

        coverage.append(
            DimensionCoverage(
                dimension=dimension,
                consensus_claims=len(in_consensus),
                outlier_claims=len(in_outliers),
                is_gap=is_gap,
                is_contested=is_contested,
                status=status,
                leader=leader,
                leader_source=leader_source,
                support_bar=support_bar,
            )
        )
    return coverage


def sort_dimensions(coverage: List[DimensionCoverage]) -> List[DimensionCoverage]:
    """Gaps first, then contested, then settled; ties by descending support bar."""
    return sorted(coverage, key=lambda d: (STATUS_RANK[d.status], -(d.support_bar or 0)))


def compute_summary_bar(
    claim_map: ClaimMap,
    coverage: List[DimensionCoverage],
    query_type: str,
    escape_velocity: bool,
) -> Dict[str, Any]:
    gaps = sum(1 for d in coverage if d.status == "gap")
    contested = sum(1 for d in coverage if d.status == "contested")
    settled = sum(1 for d in coverage if d.status == "settled")

    consensus = claim_map.consensus_claims()
    top_claim = consensus[0] if consensus else None
    if claim_map.strength >= 0.7 and gaps == 0 and top_claim:
        lead = {"text": top_claim.text, "support": top_claim.support_count, "type": "consensus"}
    elif gaps > settled:
        lead = {"text": f"{gaps} dimensions only covered by outliers", "support": None, "type": "exploration"}
    elif contested > 0:
        lead = {"text": f"{contested} dimensions contested", "support": None, "type": "contested"}
    else:
        lead = {
            "text": top_claim.text if top_claim else "Mixed signals",
            "support": top_claim.support_count if top_claim else None,
            "type": "consensus",
        }

    conditions = sum(1 for c in consensus if c.applies_when) + sum(
        1 for o in claim_map.outliers if o.applies_when
    )
    return {
        "lead": lead,
        "coverage": {"gaps": gaps, "contested": contested, "settled": settled, "total": len(coverage)},
        "signals": {
            "challengers": len(claim_map.frame_challengers()),
            "conditions": conditions,
            "tensions": len(claim_map.tensions),
            "ghost": claim_map.ghost,
        },
        "meta": {
            "model_count": claim_map.model_count,
            "strength": round(claim_map.strength * 100),
            "query_type": query_type,
            "escape_velocity": escape_velocity,
            "topology": claim_map.topology,
        },
    }


def compute_explore(query: str, artifact: Any, claim_map: Optional[ClaimMap] = None) -> ExploreAnalysis:
    """Bundle the explore analysis for ``query`` over a raw or normalized artifact."""
    claim_map = claim_map or normalize_artifact(artifact)
    query_type = classify_query_type(query)
    escape_velocity = check_escape_velocity(claim_map)
    coverage = sort_dimensions(compute_dimension_coverage(claim_map))

    consensus_dimensions = {c.dimension for c in claim_map.consensus_claims() if c.dimension}
    ranked = sorted(
        (compute_outlier_elevation(o, consensus_dimensions, claim_map.outliers) for o in claim_map.outliers),
        key=lambda o: -o.elevation_score,
    )
    for outlier in ranked[:RECOMMENDED_COUNT]:
        outlier.is_recommended = True

    return ExploreAnalysis(
        query_type=query_type,
        container_type=select_container(claim_map, query_type),
        escape_velocity=escape_velocity,
        dimensions=build_dimension_matrix(claim_map),
        conditions=extract_conditions(claim_map),
        paradigms=extract_paradigms(claim_map),
        conflicts=extract_conflicts(claim_map),
        dimension_coverage=coverage,
        recommended_outliers=[o for o in ranked if o.is_recommended],
        all_outliers=ranked,
        summary_bar=compute_summary_bar(claim_map, coverage, query_type, escape_velocity),
    )
