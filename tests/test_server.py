"""Tests for the FastAPI server."""
import json
import os
import tempfile
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from quorum.config import Config
from quorum.models.base import ProviderResult
from quorum.models.registry import ProviderRegistry
from quorum.server import app, configure

ARTIFACT = {
    "claims": [
        {"id": "c1", "label": "Adopt Rust", "text": "Adopt Rust for the parser", "supporters": [0, 1], "dimension": "risk"},
        {"id": "c2", "label": "Wait a year", "text": "Wait until the team is trained", "supporters": [1], "dimension": "timing"},
    ],
    "edges": [{"from": "c1", "to": "c2", "type": "conflicts"}],
    "ghosts": ["Hiring cost"],
}
MAP_TEXT = f"<map>{json.dumps(ARTIFACT)}</map><narrative>Split on timing.</narrative>"
BLOCKED = ProviderResult(ok=False, error="Response blocked: SAFETY")


class FakeProvider:
    def __init__(self, provider_id, text=None, result=None):
        self.provider_id = provider_id
        self.max_input_chars = None
        self.result = result or ProviderResult(text=text or f"{provider_id} answer", context={"thread": provider_id})

    async def generate(self, prompt, context=None, system=None, timeout=120.0):
        return self.result


class ServerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        env = patch.dict(os.environ, {"QUORUM_DATA_DIR": self.tmp.name})
        env.start()
        self.addCleanup(env.stop)
        self.addCleanup(self.tmp.cleanup)

        self.registry = ProviderRegistry()
        for provider in (
            FakeProvider("a"),
            FakeProvider("b"),
            FakeProvider("m", text=MAP_TEXT),
            FakeProvider("q", text="Hello!\n<<<HANDOVER>>>\nshape: comparative\n<<<END>>>"),
            FakeProvider("x", result=BLOCKED),
        ):
            self.registry.register(provider)
        self.config = Config({
            "data_dir": self.tmp.name,
            "providers": [{"id": pid} for pid in ("a", "b", "m", "q")],
            "workflow": {"mapper": "m", "max_retries": 0, "retry_delay_seconds": 0},
            "concierge": {"provider": "q", "batch_providers": ["a", "b"]},
        })
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)
        configure(app, self.config, registry=self.registry)

    def run_workflow(self, **payload):
        payload.setdefault("type", "initialize")
        if payload["type"] != "recompute":
            payload.setdefault("mapper", "m")
        return self.client.post("/api/workflows?wait=true", json=payload)


class TestAnalysisRoutes(ServerTestCase):
    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy", "service": "quorum"})

    def test_analyze(self):
        response = self.client.post("/api/analyze", json={"artifact": ARTIFACT})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertIn("analysis", body)
        self.assertTrue(body["brief"])

    def test_explore_requires_query(self):
        response = self.client.post("/api/explore", json={"artifact": ARTIFACT})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "query required"})

    def test_explore(self):
        response = self.client.post("/api/explore", json={"query": "Should we adopt Rust?", "artifact": ARTIFACT})
        self.assertEqual(response.status_code, 200)


class TestWorkflowRoutes(ServerTestCase):
    def test_initialize_and_read_back(self):
        response = self.run_workflow(userMessage="Should we adopt Rust?", providers=["a", "b"])
        self.assertEqual(response.status_code, 200)
        result = response.json()
        self.assertEqual(result["status"], "completed")
        self.assertEqual(result["artifact"]["model_count"], 2)
        session_id, turn_id = result["session_id"], result["turn_id"]

        sessions = self.client.get("/api/sessions").json()["sessions"]
        self.assertEqual([s["id"] for s in sessions], [session_id])

        detail = self.client.get(f"/api/sessions/{session_id}").json()
        self.assertEqual(detail["last_turn_id"], turn_id)

        analysis = self.client.get(f"/api/sessions/{session_id}/turns/{turn_id}/analysis").json()
        self.assertEqual(analysis["turn_id"], turn_id)
        self.assertIn("explore", analysis)

        missing = self.client.get(f"/api/sessions/{session_id}/turns/ai-missing/analysis")
        self.assertEqual(missing.status_code, 404)

    def test_extend_and_recompute(self):
        first = self.run_workflow(userMessage="Should we adopt Rust?", providers=["a", "b"]).json()
        extended = self.run_workflow(
            type="extend", sessionId=first["session_id"], userMessage="And Go?", providers=["a", "b"],
        )
        self.assertEqual(extended.json()["status"], "completed")

        recomputed = self.run_workflow(
            type="recompute",
            sessionId=first["session_id"],
            sourceTurnId=first["turn_id"],
            stepType="mapping",
            targetProvider="m",
        )
        self.assertEqual(recomputed.json()["turn_id"], first["turn_id"])

    def test_edits(self):
        result = self.run_workflow(userMessage="Should we adopt Rust?", providers=["a", "b"]).json()
        url = f"/api/sessions/{result['session_id']}/turns/{result['turn_id']}/edits"
        response = self.client.post(url, json={"removed": ["c2"], "userNotes": "timing is moot"})
        self.assertEqual(response.json(), {"ok": True, "turn_id": result["turn_id"], "intensity": "heavy"})

        detail = self.client.get(f"/api/sessions/{result['session_id']}").json()
        turn = [t for t in detail["turns"] if t["id"] == result["turn_id"]][0]
        self.assertEqual(turn["edits"]["removed"], ["c2"])
        self.assertEqual(turn["edits"]["user_notes"], "timing is moot")

        missing = self.client.post(f"/api/sessions/{result['session_id']}/turns/ai-missing/edits", json={})
        self.assertEqual(missing.status_code, 404)

    def test_background_workflow_accepted(self):
        response = self.client.post(
            "/api/workflows", json={"type": "initialize", "userMessage": "q", "providers": ["a"]},
        )
        self.assertEqual(response.status_code, 202)
        body = response.json()
        self.assertTrue(body["ok"])
        self.assertTrue(body["workflow_id"].startswith("wf-initialize-"))

    def test_bad_requests(self):
        self.assertEqual(self.run_workflow(type="rewind").status_code, 400)
        self.assertEqual(self.run_workflow(providers=["a"]).status_code, 400)
        missing = self.run_workflow(type="extend", sessionId="session-missing", userMessage="q", providers=["a"])
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(self.client.get("/api/sessions/session-missing").status_code, 404)

    def test_exhausted_providers(self):
        response = self.run_workflow(userMessage="q", providers=["x"])
        self.assertEqual(response.status_code, 502)
        self.assertIn("error", response.json())


class TestConciergeRoutes(ServerTestCase):
    def test_concierge_flow(self):
        response = self.client.post("/api/concierge", json={"message": "Should we adopt Rust?"})
        self.assertEqual(response.status_code, 200)
        reply = response.json()
        self.assertEqual(reply["user_response"], "Hello!")
        self.assertEqual(reply["phase"], "explorer")

        empty = self.client.post(f"/api/sessions/{reply['session_id']}/concierge", json={"message": " "})
        self.assertEqual(empty.status_code, 400)

    def test_unknown_session(self):
        response = self.client.post("/api/sessions/session-missing/concierge", json={"message": "hi"})
        self.assertEqual(response.status_code, 404)

    def test_websocket_state_and_cancel(self):
        with self.client.websocket_connect("/ws/sessions/session-missing") as websocket:
            self.assertEqual(websocket.receive_json(), {"type": "state", "session": None})
            websocket.send_text("cancel")
            self.assertEqual(websocket.receive_json(), {"type": "cancelled", "ok": False})


if __name__ == "__main__":
    unittest.main()
