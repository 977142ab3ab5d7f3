"""Tests for mapper prompt construction and artifact extraction."""
import unittest

from quorum.workflow.mapper import build_mapping_prompt, extract_artifact, extract_narrative


class TestMappingPrompt(unittest.TestCase):
    def test_models_numbered_from_zero(self):
        prompt = build_mapping_prompt("Rust?", [("a", "yes"), ("b", "no")])
        self.assertIn("=== MODEL 0 ===\nyes", prompt)
        self.assertIn("=== MODEL 1 ===\nno", prompt)
        self.assertIn('"Rust?"', prompt)

    def test_citation_order_wins(self):
        prompt = build_mapping_prompt("Rust?", [("a", "yes"), ("b", "no")], citation_order=["b", "a"])
        self.assertIn("=== MODEL 0 ===\nno", prompt)
        self.assertIn("=== MODEL 1 ===\nyes", prompt)

    def test_missing_source_keeps_numbering(self):
        prompt = build_mapping_prompt("Rust?", [("c", "maybe")], citation_order=["a", "b", "c"])
        self.assertIn("=== MODEL 2 ===\nmaybe", prompt)


class TestExtractArtifact(unittest.TestCase):
    def test_map_block(self):
        text = 'Here you go\n<map>{"claims": [{"id": "c1", "text": "x", "supporters": [0]}]}</map>'
        artifact = extract_artifact(text, model_count=3)
        self.assertEqual(artifact["claims"][0]["id"], "c1")
        self.assertEqual(artifact["model_count"], 3)

    def test_declared_model_count_kept(self):
        artifact = extract_artifact('<map>{"claims": [], "model_count": 5}</map>', model_count=2)
        self.assertEqual(artifact["model_count"], 5)

    def test_fenced_json(self):
        text = 'Intro\n```json\n{"consensus": {"claims": []}, "outliers": []}\n```'
        self.assertIn("consensus", extract_artifact(text))

    def test_bare_object_after_prose(self):
        text = 'The map is {"claims": [{"id": "c1", "text": "x"}]} and that is all.'
        self.assertEqual(extract_artifact(text)["claims"][0]["id"], "c1")

    def test_skips_unrelated_objects(self):
        text = '{"note": "ignore"} then {"claims": []}'
        self.assertEqual(extract_artifact(text), {"claims": []})

    def test_nothing_parses(self):
        with self.assertLogs("quorum.workflow.mapper", level="WARNING"):
            self.assertIsNone(extract_artifact("<map>{not json}</map>"))
        self.assertIsNone(extract_artifact(""))

    def test_narrative(self):
        self.assertEqual(extract_narrative("<map>{}</map>\n<narrative>\n Settled.\n</narrative>"), "Settled.")
        self.assertEqual(extract_narrative("no narrative"), "")
        self.assertEqual(extract_narrative(None), "")


if __name__ == "__main__":
    unittest.main()
