"""Structural analysis pipeline: artifact in, :class:`StructuralAnalysis` out."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from quorum.analysis.artifact import ClaimMap, Edge, normalize_artifact
from quorum.analysis.graph import GraphAnalysis, analyze_graph, signal_strength
from quorum.analysis.metrics import (
    CoreRatios,
    EnrichedClaim,
    Landscape,
    assign_percentile_flags,
    compute_claim_ratios,
    compute_core_ratios,
    compute_landscape,
    model_footprints,
    top_claim_ids,
)
from quorum.analysis.patterns import (
    GhostAnalysis,
    StructuralPatterns,
    analyze_ghosts,
    detect_cascade_risks,
    detect_patterns,
)
from quorum.analysis.shape import ShapeClassification, classify_shape, detect_secondary_patterns

logger = logging.getLogger(__name__)


@dataclass
class StructuralAnalysis:
    edges: List[Edge] = field(default_factory=list)
    landscape: Landscape = field(default_factory=Landscape)
    claims: List[EnrichedClaim] = field(default_factory=list)
    patterns: StructuralPatterns = field(default_factory=StructuralPatterns)
    ghost_analysis: GhostAnalysis = field(default_factory=GhostAnalysis)
    graph: GraphAnalysis = field(default_factory=GraphAnalysis)
    ratios: CoreRatios = field(default_factory=CoreRatios)
    shape: ShapeClassification = field(default_factory=ShapeClassification)
    ghosts: List[str] = field(default_factory=list)

    @property
    def signal_strength(self) -> float:
        return self.shape.signal_strength

    def claim(self, claim_id: str) -> EnrichedClaim | None:
        for claim in self.claims:
            if claim.id == claim_id:
                return claim
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edges": [e.to_dict() for e in self.edges],
            "landscape": self.landscape.to_dict(),
            "claims": [c.to_dict() for c in self.claims],
            "patterns": self.patterns.to_dict(),
            "ghost_analysis": self.ghost_analysis.to_dict(),
            "graph": self.graph.to_dict(),
            "ratios": self.ratios.to_dict(),
            "shape": self.shape.to_dict(),
            "ghosts": list(self.ghosts),
            "signal_strength": self.signal_strength,
        }


def compute_structural_analysis(artifact: Any) -> StructuralAnalysis:
    """Run the full pipeline. Malformed artifacts yield an empty, ``sparse`` analysis."""
    claim_map: ClaimMap = normalize_artifact(artifact)
    edges = claim_map.edges
    landscape = compute_landscape(claim_map)

    footprints = model_footprints(claim_map.claims)
    claims = [compute_claim_ratios(c, edges, landscape.model_count, footprints) for c in claim_map.claims]
    labels = {c.id: c.label for c in claims}
    cascade_risks = detect_cascade_risks(edges, labels)
    top_ids = top_claim_ids(claims)
    claims = assign_percentile_flags(
        claims,
        edges,
        {risk.source_id: len(risk.dependent_ids) for risk in cascade_risks},
        top_ids,
    )

    graph = analyze_graph(
        [c.id for c in claims],
        edges,
        {c.id: c.support_ratio for c in claims},
        {c.id for c in claims if c.is_high_support},
    )
    ratios = compute_core_ratios(claims, edges, graph)
    patterns = detect_patterns(claims, edges, cascade_risks, top_ids)
    ghost_analysis = analyze_ghosts(claim_map.ghosts, claims)
    signal = signal_strength(len(claims), len(edges), landscape.model_count, [c.supporters for c in claims])

    shape = classify_shape(claims, edges, graph, ratios, signal)
    shape.patterns = detect_secondary_patterns(claims, edges, graph, cascade_risks)
    logger.debug(
        f"Structural analysis: {len(claims)} claims, {len(edges)} edges, "
        f"shape={shape.primary} confidence={shape.confidence:.2f}"
    )

    return StructuralAnalysis(
        edges=list(edges),
        landscape=landscape,
        claims=claims,
        patterns=patterns,
        ghost_analysis=ghost_analysis,
        graph=graph,
        ratios=ratios,
        shape=shape,
        ghosts=list(claim_map.ghosts),
    )


def build_structural_brief(analysis: StructuralAnalysis) -> str:
    """Render positions, relationships and open questions for a model prompt.

    Support counts and rankings are not included.
    """
    by_id = {c.id: c for c in analysis.claims}
    lines = ["## Positions", ""]
    for claim in analysis.claims:
        lines.append(f"- **{claim.label}**")
        if claim.text and claim.text != claim.label:
            lines.append(f"  {claim.text}")
    lines.append("")

    templates = {
        "conflicts": ("**{a}** conflicts with **{b}**", "Choosing one forecloses the other."),
        "tradeoff": ("**{a}** trades off against **{b}**", "Optimizing for one sacrifices the other."),
        "supports": ("**{a}** supports **{b}**", None),
        "prerequisite": ("**{b}** depends on **{a}**", None),
    }
    relations = []
    for edge_type in ("conflicts", "tradeoff", "supports", "prerequisite"):
        head, tail = templates[edge_type]
        for edge in analysis.edges:
            if edge.type != edge_type or edge.source not in by_id or edge.target not in by_id:
                continue
            relations.append("- " + head.format(a=by_id[edge.source].label, b=by_id[edge.target].label))
            if tail:
                relations.append(f"  {tail}")
    if relations:
        lines += ["## Relationships", ""] + relations + [""]

    challengers = [c for c in analysis.claims if c.role == "challenger" or c.challenges]
    if challengers:
        lines += ["## Challenges", ""]
        for claim in challengers:
            target = None
            for edge in analysis.edges:
                if edge.type == "conflicts" and edge.source == claim.id and edge.target in by_id:
                    target = by_id[edge.target]
                    break
            if target is not None:
                lines.append(f"- **{claim.label}** challenges **{target.label}**")
            else:
                lines.append(f"- **{claim.label}** challenges a premise")
        lines.append("")

    if sum(1 for e in analysis.edges if e.type == "prerequisite") >= 2:
        lines += [
            "## Dependencies",
            "",
            "Some positions depend on others being true. If a foundation fails, what rests on it falls.",
            "",
        ]

    if analysis.ghost_analysis.count:
        lines += ["## Unaddressed", ""]
        lines += [f"- {ghost}" for ghost in analysis.ghosts]
        lines.append("")

    if analysis.shape.transfer_question:
        lines += ["## The Question", "", analysis.shape.transfer_question]
    return "\n".join(lines).strip() + "\n"
