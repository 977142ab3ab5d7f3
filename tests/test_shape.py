"""Tests for shape classification and the structural analysis pipeline."""
import unittest

from quorum.analysis.engine import build_structural_brief, compute_structural_analysis


def _artifact(claims, edges=(), model_count=3, ghosts=()):
    return {
        "model_count": model_count,
        "claims": [
            {"id": cid, "label": cid.upper(), "supporters": supporters, **extra}
            for cid, supporters, extra in claims
        ],
        "edges": [{"from": a, "to": b, "type": t} for a, b, t in edges],
        "ghosts": list(ghosts),
    }


def _pattern(analysis, pattern_type):
    for pattern in analysis.shape.patterns:
        if pattern.type == pattern_type:
            return pattern
    return None


class TestPrimaryShape(unittest.TestCase):
    def test_empty_artifact_is_sparse(self):
        analysis = compute_structural_analysis(None)
        self.assertEqual(analysis.shape.primary, "sparse")
        self.assertEqual(analysis.shape.peaks, [])
        self.assertEqual(analysis.signal_strength, 0.0)

    def test_no_claim_above_quarter_support_is_sparse(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0], {}), ("b", [1], {}), ("c", [2], {})],
            edges=[("a", "b", "supports"), ("b", "c", "supports")],
            model_count=4,
        ))
        self.assertEqual(analysis.shape.primary, "sparse")
        self.assertEqual(analysis.shape.peaks, [])
        self.assertEqual(analysis.shape.hills, [])

    def test_conflicting_peaks_fork(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1], {}), ("b", [1, 2], {})],
            edges=[("a", "b", "conflicts")],
        ))
        self.assertEqual(analysis.shape.primary, "forked")
        self.assertEqual(analysis.shape.peak_relationship, "conflicting")
        self.assertEqual(analysis.shape.peak_pair_relations, [{"a": "a", "b": "b", "relation": "conflicts"}])

    def test_tradeoff_peaks_constrained(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1], {}), ("b", [1, 2], {})],
            edges=[("a", "b", "tradeoff")],
        ))
        self.assertEqual(analysis.shape.primary, "constrained")
        self.assertEqual(analysis.shape.peak_relationship, "trading-off")

    def test_connected_peaks_converge(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1, 2], {}), ("b", [0, 1], {})],
            edges=[("b", "a", "supports")],
        ))
        self.assertEqual(analysis.shape.primary, "convergent")
        self.assertEqual(analysis.shape.peak_relationship, "supporting")
        self.assertTrue(analysis.shape.transfer_question)

    def test_disconnected_peaks_parallel(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1], {}), ("b", [1, 2], {}), ("c", [0], {}), ("d", [2], {})],
            edges=[("c", "a", "supports"), ("d", "b", "supports")],
        ))
        self.assertEqual(analysis.shape.primary, "parallel")
        self.assertEqual(analysis.shape.peak_relationship, "independent")

    def test_confidence_bounded(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1], {}), ("b", [1, 2], {})],
            edges=[("a", "b", "conflicts")],
        ))
        self.assertGreaterEqual(analysis.shape.confidence, 0.0)
        self.assertLessEqual(analysis.shape.confidence, 1.0)
        self.assertIn("forked", analysis.shape.scores)


class TestSecondaryPatterns(unittest.TestCase):
    def test_keystone_with_large_cascade(self):
        analysis = compute_structural_analysis(_artifact(
            [("k", [0, 1, 2], {}), ("d1", [0], {}), ("d2", [1], {}), ("d3", [2], {})],
            edges=[("k", "d1", "prerequisite"), ("k", "d2", "prerequisite"), ("k", "d3", "prerequisite")],
        ))
        keystone = _pattern(analysis, "keystone")
        self.assertIsNotNone(keystone)
        self.assertEqual(keystone.severity, "high")
        self.assertEqual(keystone.data["keystone"], "k")
        self.assertEqual(keystone.data["cascade_size"], 3)

    def test_challenger_against_peak(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1, 2], {"role": "anchor"}), ("x", [0], {"role": "challenger"})],
            edges=[("x", "a", "conflicts")],
        ))
        self.assertEqual(analysis.shape.primary, "convergent")
        dissent = _pattern(analysis, "dissent")
        self.assertEqual(dissent.severity, "high")
        self.assertEqual(dissent.data["strongest_voice"], "x")
        challenged = _pattern(analysis, "challenged")
        self.assertEqual(challenged.data["challenges"], [{"challenger": "x", "target": "a"}])
        self.assertEqual(challenged.severity, "high")

    def test_orphans_need_edges(self):
        without_edges = compute_structural_analysis(_artifact([("a", [0, 1], {}), ("b", [2], {})]))
        self.assertIsNone(_pattern(without_edges, "orphaned"))

        with_edges = compute_structural_analysis(_artifact(
            [("a", [0, 1], {}), ("b", [2], {}), ("c", [0, 1, 2], {})],
            edges=[("a", "b", "supports")],
        ))
        orphaned = _pattern(with_edges, "orphaned")
        self.assertEqual([o["id"] for o in orphaned.data["orphans"]], ["c"])
        self.assertEqual(orphaned.data["orphans"][0]["reason"], "high_support_isolated")

    def test_conditional_branches(self):
        analysis = compute_structural_analysis(_artifact(
            [("c", [0], {"applies_when": "if the team is small"}), ("p", [0, 1, 2], {})],
            edges=[("c", "p", "prerequisite")],
        ))
        conditional = _pattern(analysis, "conditional")
        self.assertEqual(conditional.data["conditions"][0]["branches"], ["p"])
        self.assertEqual(conditional.severity, "medium")


class TestStructuralBrief(unittest.TestCase):
    def test_brief_sections(self):
        analysis = compute_structural_analysis(_artifact(
            [("a", [0, 1], {}), ("b", [1, 2], {})],
            edges=[("a", "b", "conflicts")],
            ghosts=["budget"],
        ))
        brief = build_structural_brief(analysis)
        self.assertIn("## Positions", brief)
        self.assertIn("**A** conflicts with **B**", brief)
        self.assertIn("- budget", brief)
        self.assertIn(analysis.shape.transfer_question, brief)

    def test_to_dict_is_plain_data(self):
        data = compute_structural_analysis(_artifact([("a", [0, 1], {})])).to_dict()
        self.assertEqual(data["shape"]["primary"], "convergent")
        self.assertEqual(data["claims"][0]["id"], "a")


if __name__ == "__main__":
    unittest.main()
