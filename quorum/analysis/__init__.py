from quorum.analysis.artifact import ArtifactEdits, ClaimMap, apply_edits, normalize_artifact
from quorum.analysis.engine import StructuralAnalysis, build_structural_brief, compute_structural_analysis
from quorum.analysis.explore import ExploreAnalysis, classify_query_type, compute_explore

__all__ = [
    "ArtifactEdits",
    "ClaimMap",
    "ExploreAnalysis",
    "StructuralAnalysis",
    "apply_edits",
    "build_structural_brief",
    "classify_query_type",
    "compute_explore",
    "compute_structural_analysis",
    "normalize_artifact",
]
