"""Tests for the concierge turn orchestrator."""
import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from quorum.concierge.orchestrator import ConciergeOrchestrator
from quorum.concierge.phase import EXECUTOR, EXPLORER, STARTER
from quorum.config import Config
from quorum.errors import SessionNotFoundError, WorkflowError
from quorum.models.base import ProviderResult
from quorum.models.registry import ProviderRegistry
from quorum.store import SessionStore
from quorum.workflow.engine import WorkflowEngine

MAP_TEXT = "<map>" + json.dumps({
    "claims": [
        {"id": "c1", "label": "Use dual writes", "text": "Run dual writes during cutover", "supporters": [0, 1]},
        {"id": "c2", "label": "Freeze deploys", "text": "Freeze deploys for a week", "supporters": [1]},
    ],
    "edges": [],
}) + "</map><narrative>Dual writes are settled.</narrative>"

HANDOVER_REPLY = "Hello!\n<<<HANDOVER>>>\nshape: comparative\n<<<END>>>"

WORKFLOW_REPLY = """Great, let's plan it.
<<<BATCH>>>
TYPE: WORKFLOW

HANDOVER:
  goal: migrate billing
  constraints: [no downtime]

PROMPT:
You are a migration architect.
Plan the billing migration.
<<<END>>>"""

STEP_HELP_REPLY = (
    "Let me ask around.\n<<<BATCH>>>\nTYPE: STEP_HELP\nSTEP: schema cutover\n"
    "BLOCKER: dual writes\nPROMPT: How do we cut over safely?\n<<<END>>>"
)


class FakeProvider:
    def __init__(self, provider_id, responses=None, default=None):
        self.provider_id = provider_id
        self.max_input_chars = None
        self.responses = list(responses or [])
        self.default = default
        self.calls = []

    async def generate(self, prompt, context=None, system=None, timeout=120.0):
        self.calls.append({"prompt": prompt, "context": context})
        if self.responses:
            return self.responses.pop(0)
        if self.default is not None:
            return self.default
        return ProviderResult(text=f"{self.provider_id} answer")


def said(text):
    return ProviderResult(text=text, context={"thread": "concierge"})


async def _no_sleep(_seconds):
    return None


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SessionStore(Path(self.tmp.name))
        self.a = FakeProvider("a")
        self.b = FakeProvider("b")
        self.m = FakeProvider("m", default=ProviderResult(text=MAP_TEXT))

    def tearDown(self):
        self.tmp.cleanup()

    def orchestrator(self, *replies, batch=None):
        self.q = FakeProvider("q", responses=list(replies))
        registry = ProviderRegistry()
        for provider in [self.q, self.m] + (batch or [self.a, self.b]):
            registry.register(provider)
        engine = WorkflowEngine(registry, store=self.store, retry_delay=0.0, sleep=_no_sleep)
        return ConciergeOrchestrator(engine, self.store, provider_id="q", batch_providers=["a", "b"], mapper="m")


class TestStarter(OrchestratorTestCase):
    async def test_first_turn_hands_over_to_explorer(self):
        orchestrator = self.orchestrator(said(HANDOVER_REPLY))
        reply = await orchestrator.handle_turn(None, "Should we migrate billing?")

        self.assertEqual(reply.user_response, "Hello!")
        self.assertEqual(reply.phase, EXPLORER)
        self.assertEqual(reply.turn_in_phase, 0)
        self.assertEqual(reply.action, "initialize")
        self.assertEqual(reply.signal, "handover")
        self.assertTrue(reply.transitioned)

        self.assertIsNone(self.q.calls[0]["context"])
        self.assertEqual(len(self.a.calls), 1)
        self.assertIsNone(self.m.calls[0]["context"])

        session = self.store.load(reply.session_id)
        state = session.phase
        self.assertEqual(state.intent_handover.shape, "comparative")
        self.assertIsNone(state.concierge_context_id)
        self.assertIsNone(state.concierge_context)
        self.assertEqual(state.seed["user_query"], "Should we migrate billing?")
        self.assertEqual(state.seed["starter_response"], "Hello!")
        turn = session.ai_turn(reply.turn_id)
        self.assertEqual(turn.latest("concierge", "q").text, "Hello!")
        self.assertEqual(turn.artifact["model_count"], 2)

    async def test_starter_continues_on_same_context(self):
        orchestrator = self.orchestrator(said("Tell me about your team."), said("Noted."))
        first = await orchestrator.handle_turn(None, "Should we migrate billing?")
        self.assertEqual(first.phase, STARTER)
        self.assertEqual(first.turn_in_phase, 1)
        self.assertIsNone(first.signal)

        context_id = self.store.load(first.session_id).phase.concierge_context_id
        self.assertTrue(context_id.startswith("ctx-"))

        second = await orchestrator.handle_turn(first.session_id, "Two engineers.")
        self.assertEqual(second.action, "continue")
        self.assertEqual(second.turn_in_phase, 2)
        self.assertEqual(self.q.calls[1]["context"], {"thread": "concierge"})
        self.assertIn("Two engineers.", self.q.calls[1]["prompt"])
        # the analysis batch only runs on the very first turn
        self.assertEqual(len(self.a.calls), 1)
        self.assertEqual(self.store.load(first.session_id).phase.concierge_context_id, context_id)

    async def test_turns_saved_while_waiting_are_kept(self):
        orchestrator = self.orchestrator(said("Tell me about your team."))
        first = await orchestrator.handle_turn(None, "Should we migrate billing?")
        store = self.store

        class SideWriter(FakeProvider):
            async def generate(self, prompt, context=None, system=None, timeout=120.0):
                def _add(session):
                    session.add_ai_turn(session.add_user_turn("side question"))

                store.update(first.session_id, _add)
                return said("Noted.")

        orchestrator.engine.registry.register(SideWriter("q"))
        second = await orchestrator.handle_turn(first.session_id, "Two engineers.")

        session = self.store.load(first.session_id)
        self.assertEqual(len(session.ai_turns), 3)
        self.assertEqual(session.last_turn_id, second.turn_id)
        self.assertEqual(session.phase.turn_in_phase, 2)
        self.assertEqual(session.ai_turn(second.turn_id).latest("concierge", "q").text, "Noted.")

    async def test_failed_seed_batch_still_answers(self):
        blocked = ProviderResult(ok=False, error="Response blocked: SAFETY")
        a = FakeProvider("a", default=blocked)
        b = FakeProvider("b", default=blocked)
        orchestrator = self.orchestrator(said("Hi there."), batch=[a, b])
        reply = await orchestrator.handle_turn(None, "Should we migrate billing?")
        self.assertEqual(reply.user_response, "Hi there.")
        self.assertEqual(self.store.load(reply.session_id).phase.seed["shape"], "sparse")


class TestExplorerAndExecutor(OrchestratorTestCase):
    async def _to_explorer(self, orchestrator):
        reply = await orchestrator.handle_turn(None, "Should we migrate billing?")
        self.assertEqual(reply.phase, EXPLORER)
        return reply.session_id

    async def test_workflow_block_moves_to_executor(self):
        orchestrator = self.orchestrator(said(HANDOVER_REPLY), said(WORKFLOW_REPLY), said("Step one: audit."))
        session_id = await self._to_explorer(orchestrator)

        reply = await orchestrator.handle_turn(session_id, "Let's plan it.")
        self.assertEqual(reply.action, "initialize")
        self.assertIsNone(self.q.calls[1]["context"])
        self.assertEqual(reply.signal, "workflow")
        self.assertEqual(reply.phase, EXECUTOR)
        self.assertEqual(reply.turn_in_phase, 0)
        self.assertEqual(reply.user_response, "Great, let's plan it.")
        self.assertTrue(self.a.calls[-1]["prompt"].startswith("You are a migration architect."))

        state = self.store.load(session_id).phase
        self.assertEqual(state.execution_handover.goal, "migrate billing")
        self.assertEqual(state.active_workflow.goal, "migrate billing")
        self.assertTrue(state.pending_workflow_analysis["brief"])

        reply = await orchestrator.handle_turn(session_id, "Where do we start?")
        self.assertEqual(reply.phase, EXECUTOR)
        self.assertEqual(reply.turn_in_phase, 1)
        state = self.store.load(session_id).phase
        self.assertIsNone(state.pending_workflow_analysis)
        self.assertEqual(state.concierge_context, {"thread": "concierge"})

    async def test_failed_workflow_batch_stays_in_explorer(self):
        orchestrator = self.orchestrator(said(HANDOVER_REPLY), said(WORKFLOW_REPLY))
        session_id = await self._to_explorer(orchestrator)
        blocked = ProviderResult(ok=False, error="Response blocked: SAFETY")
        self.a.default = blocked
        self.b.default = blocked

        reply = await orchestrator.handle_turn(session_id, "Let's plan it.")
        self.assertEqual(reply.phase, EXPLORER)
        self.assertFalse(reply.transitioned)
        self.assertIn("batch failed", reply.batch_error)
        self.assertEqual(reply.turn_in_phase, 1)

    async def test_step_help_is_queued_for_next_turn(self):
        orchestrator = self.orchestrator(
            said(HANDOVER_REPLY), said(WORKFLOW_REPLY), said(STEP_HELP_REPLY), said("Use dual writes."),
        )
        session_id = await self._to_explorer(orchestrator)
        await orchestrator.handle_turn(session_id, "Let's plan it.")

        reply = await orchestrator.handle_turn(session_id, "I'm stuck on the cutover.")
        self.assertEqual(reply.signal, "step_help")
        self.assertEqual(reply.phase, EXECUTOR)
        self.assertEqual(reply.user_response, "Let me ask around.")
        self.assertEqual(self.a.calls[-1]["prompt"], "How do we cut over safely?")
        state = self.store.load(session_id).phase
        self.assertTrue(state.pending_step_help["brief"])
        self.assertEqual(state.active_workflow.steps, [{"step": "schema cutover", "blocker": "dual writes"}])
        self.assertEqual(state.active_workflow.current_step_index, 0)

        await orchestrator.handle_turn(session_id, "So what now?")
        self.assertIn("So what now?", self.q.calls[-1]["prompt"])
        self.assertIsNone(self.store.load(session_id).phase.pending_step_help)

    async def test_workflow_block_ignored_in_executor(self):
        orchestrator = self.orchestrator(said(HANDOVER_REPLY), said(WORKFLOW_REPLY), said(WORKFLOW_REPLY))
        session_id = await self._to_explorer(orchestrator)
        await orchestrator.handle_turn(session_id, "Let's plan it.")
        batch_calls = len(self.a.calls)

        reply = await orchestrator.handle_turn(session_id, "Plan again?")
        self.assertIsNone(reply.signal)
        self.assertEqual(len(self.a.calls), batch_calls)


class TestFailures(OrchestratorTestCase):
    async def test_concierge_failure_raises(self):
        orchestrator = self.orchestrator(ProviderResult(ok=False, error="Response blocked: SAFETY"))
        with self.assertRaises(WorkflowError):
            await orchestrator.handle_turn(None, "Hello")
        self.assertEqual(self.store.list_sessions(), [])

    async def test_unknown_session(self):
        with self.assertRaises(SessionNotFoundError):
            await self.orchestrator().handle_turn("session-missing", "Hello")

    def test_from_config(self):
        config = Config({
            "providers": [{"id": "a"}, {"id": "b"}],
            "concierge": {"provider": "b"},
        })
        engine = WorkflowEngine(ProviderRegistry())
        orchestrator = ConciergeOrchestrator.from_config(config, engine, self.store)
        self.assertEqual(orchestrator.provider_id, "b")
        self.assertEqual(orchestrator.batch_providers, ["a", "b"])


if __name__ == "__main__":
    unittest.main()
