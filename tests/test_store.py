"""Tests for the session aggregate and its JSON store."""
import json
import tempfile
import unittest
from pathlib import Path

from quorum.concierge.handover import IntentHandover
from quorum.concierge.phase import EXPLORER, ConciergePhaseState
from quorum.errors import InvalidRequestError, SessionNotFoundError
from quorum.session import ProviderResponse, Session
from quorum.store import SessionStore


def _session() -> Session:
    session = Session()
    user = session.add_user_turn("Should we adopt Rust?")
    turn = session.add_ai_turn(user, "wf-initialize-1")
    turn.add_response(ProviderResponse("a", "prompt", "yes", status="completed"))
    turn.add_response(ProviderResponse("a", "prompt", "yes, carefully", status="completed"))
    turn.add_response(ProviderResponse("b", "prompt", "", status="error", error={"type": "timeout"}))
    turn.provider_contexts["a"] = {"contents": [{"role": "user"}]}
    turn.artifact = {"claims": [{"id": "c1", "text": "Adopt Rust", "supporters": [0]}]}
    return session


class TestSession(unittest.TestCase):
    def test_versions_and_latest(self):
        session = _session()
        turn = session.last_turn
        self.assertEqual([v.version for v in turn.versions("prompt", "a")], [1, 2])
        self.assertEqual(turn.latest("prompt", "a").text, "yes, carefully")
        self.assertIsNone(turn.latest("prompt", "b", completed_only=True))
        self.assertEqual(turn.response_types(), ["prompt"])

    def test_unknown_response_type_rejected(self):
        turn = _session().last_turn
        with self.assertRaises(ValueError):
            turn.add_response(ProviderResponse("a", "poetry", "x"))

    def test_title_from_first_message(self):
        self.assertEqual(_session().title, "Should we adopt Rust?")

    def test_missing_turn(self):
        with self.assertRaises(InvalidRequestError):
            _session().ai_turn("ai-missing")

    def test_branch_records_branch_point(self):
        session = _session()
        thread = session.branch(session.last_turn_id, name="What if")
        self.assertEqual(session.threads[thread.id].branch_point_turn_id, session.last_turn_id)

    def test_merge_turn_adds_a_new_pair(self):
        stored = _session()
        writer = Session.from_dict(stored.to_dict())
        user = writer.add_user_turn("And Go?")
        turn = writer.add_ai_turn(user, "wf-extend-1")
        stored.add_ai_turn(stored.add_user_turn("side question"))

        stored.merge_turn(turn, user)
        self.assertEqual(len(stored.ai_turns), 3)
        self.assertEqual(stored.turn_order[-2:], [user.id, turn.id])
        self.assertEqual(stored.last_turn_id, turn.id)

    def test_merge_turn_keeps_stored_edits(self):
        stored = _session()
        writer = Session.from_dict(stored.to_dict())
        stored.last_turn.edits = {"removed": ["c1"]}
        turn = writer.last_turn
        turn.status = "completed"

        stored.merge_turn(turn)
        self.assertEqual(stored.last_turn.status, "completed")
        self.assertEqual(stored.last_turn.edits, {"removed": ["c1"]})
        self.assertEqual(len(stored.turn_order), 2)

    def test_round_trip(self):
        session = _session()
        session.phase = ConciergePhaseState(current_phase=EXPLORER, intent_handover=IntentHandover(shape="forked"))
        restored = Session.from_dict(json.loads(json.dumps(session.to_dict())))
        self.assertEqual(restored.to_dict(), session.to_dict())
        self.assertEqual(restored.phase.intent_handover.shape, "forked")
        self.assertEqual(restored.last_turn.latest("prompt", "a").version, 2)


class TestSessionStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SessionStore(Path(self.tmp.name))

    def tearDown(self):
        self.tmp.cleanup()

    def test_save_and_load(self):
        session = _session()
        self.store.save(session)
        self.assertTrue(self.store.exists(session.id))
        loaded = self.store.load(session.id)
        self.assertEqual(loaded.last_turn_id, session.last_turn_id)
        path = Path(self.tmp.name) / "sessions" / session.id / "session.json"
        self.assertTrue(path.exists())

    def test_missing_session(self):
        with self.assertRaises(SessionNotFoundError):
            self.store.load("session-nope")
        self.assertIsNone(self.store.get("session-nope"))
        with self.assertRaises(SessionNotFoundError):
            self.store.update("session-nope", lambda s: None)

    def test_update_under_lock(self):
        session = _session()
        self.store.save(session)

        def _rename(s):
            s.title = "Renamed"

        updated = self.store.update(session.id, _rename)
        self.assertEqual(updated.title, "Renamed")
        self.assertEqual(self.store.load(session.id).title, "Renamed")

    def test_list_and_delete(self):
        first, second = _session(), _session()
        self.store.save(first)
        self.store.save(second)
        ids = {item["id"] for item in self.store.list_sessions()}
        self.assertEqual(ids, {first.id, second.id})
        self.assertTrue(self.store.delete(first.id))
        self.assertFalse(self.store.delete(first.id))
        self.assertEqual([item["id"] for item in self.store.list_sessions()], [second.id])


if __name__ == "__main__":
    unittest.main()
