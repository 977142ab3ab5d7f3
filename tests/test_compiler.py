"""Tests for request parsing and workflow compilation."""
import unittest

from quorum.errors import InvalidRequestError
from quorum.workflow.compiler import (
    AntagonistStep,
    GauntletStep,
    MappingStep,
    PromptStep,
    RefinerStep,
    UnderstandStep,
    WorkflowCompiler,
)
from quorum.workflow.context import ExtendContext, InitializeContext, RecomputeContext
from quorum.session import ProviderResponse
from quorum.workflow.requests import (
    ExtendRequest,
    InitializeRequest,
    RecomputeRequest,
    parse_request,
    request_mapper,
    snake_case,
    validate_request,
)


class TestParseRequest(unittest.TestCase):
    def test_camel_case_payload(self):
        request = parse_request({
            "type": "extend",
            "sessionId": "session-1",
            "userMessage": "And Go?",
            "providers": ["a", "b"],
            "forcedContextReset": ["b"],
            "includeMapping": False,
        })
        self.assertIsInstance(request, ExtendRequest)
        self.assertEqual(request.session_id, "session-1")
        self.assertEqual(request.forced_context_reset, ["b"])
        self.assertFalse(request.include_mapping)

    def test_single_provider_string(self):
        request = parse_request({"type": "initialize", "user_message": "hi", "providers": "a"})
        self.assertEqual(request.providers, ["a"])

    def test_unknown_type(self):
        with self.assertRaises(InvalidRequestError):
            parse_request({"type": "rewind", "user_message": "hi"})

    def test_missing_fields(self):
        with self.assertRaises(InvalidRequestError) as ctx:
            parse_request({"type": "recompute", "session_id": "s", "step_type": "mapping"})
        self.assertIn("source_turn_id", str(ctx.exception))
        self.assertIn("target_provider", str(ctx.exception))

    def test_unknown_keys_dropped(self):
        request = parse_request({"type": "initialize", "user_message": "hi", "providers": ["a"], "clientTag": "x"})
        self.assertFalse(hasattr(request, "client_tag"))

    def test_snake_case(self):
        self.assertEqual(snake_case("sourceTurnId"), "source_turn_id")
        self.assertEqual(snake_case("already_snake"), "already_snake")

    def test_validate_rejects_other_objects(self):
        with self.assertRaises(InvalidRequestError):
            validate_request({"type": "initialize"})
        with self.assertRaises(InvalidRequestError):
            validate_request(InitializeRequest(user_message="", providers=["a"]))

    def test_request_mapper(self):
        self.assertEqual(request_mapper(InitializeRequest("q", ["a", "b"], mapper="b")), "b")
        self.assertEqual(request_mapper(InitializeRequest("q", ["a", "b"])), "a")
        self.assertEqual(request_mapper(InitializeRequest("q", []), default="z"), "z")


class TestCompileFresh(unittest.TestCase):
    def setUp(self):
        self.compiler = WorkflowCompiler(default_mapper="a")

    def test_initialize_steps(self):
        request = InitializeRequest("Should we adopt Rust?", ["a", "b", "c"], mapper="b")
        workflow = self.compiler.compile(request, InitializeContext(providers=request.providers))

        self.assertTrue(workflow.workflow_id.startswith("wf-initialize-"))
        self.assertTrue(workflow.context.session_created)
        self.assertTrue(workflow.context.session_id.startswith("session-"))
        self.assertEqual([s.kind for s in workflow.steps], ["prompt", "mapping"])

        prompt, mapping = workflow.steps
        self.assertIsInstance(prompt, PromptStep)
        self.assertTrue(prompt.step_id.startswith("batch-"))
        self.assertEqual(prompt.provider_contexts, {})
        self.assertIsInstance(mapping, MappingStep)
        self.assertTrue(mapping.step_id.startswith("mapping-b-"))
        self.assertEqual(mapping.source_step_ids, [prompt.step_id])
        self.assertEqual(mapping.provider_order, ["a", "b", "c"])

    def test_initialize_keeps_given_session_id(self):
        request = InitializeRequest("q", ["a"], session_id="session-fixed")
        workflow = self.compiler.compile(request, InitializeContext(providers=["a"]))
        self.assertEqual(workflow.context.session_id, "session-fixed")

    def test_without_mapping(self):
        request = InitializeRequest("q", ["a", "b"], include_mapping=False, refiner="a")
        workflow = self.compiler.compile(request, InitializeContext(providers=["a", "b"]))
        self.assertEqual([s.kind for s in workflow.steps], ["prompt"])

    def test_downstream_order(self):
        request = InitializeRequest(
            "q", ["a", "b"], understand="a", gauntlet="b", refiner="a", antagonist="b",
        )
        workflow = self.compiler.compile(request, InitializeContext(providers=["a", "b"]))
        kinds = [s.kind for s in workflow.steps]
        self.assertEqual(kinds, ["prompt", "mapping", "understand", "gauntlet", "refiner", "antagonist"])
        refiner = workflow.step("refiner")
        antagonist = workflow.step("antagonist")
        self.assertIsInstance(workflow.step("understand"), UnderstandStep)
        self.assertIsInstance(workflow.step("gauntlet"), GauntletStep)
        self.assertIsInstance(refiner, RefinerStep)
        self.assertIsInstance(antagonist, AntagonistStep)
        self.assertIn(workflow.step("understand").step_id, refiner.source_step_ids)
        self.assertEqual(antagonist.source_step_ids[-1], refiner.step_id)

    def test_extend_continues_threads(self):
        resolved = ExtendContext(
            session_id="session-1",
            last_turn_id="ai-1",
            provider_contexts={"a": {"contents": ["x"]}, "b": {"is_new_joiner": True}},
            previous_context={"user_message": "first", "consensus": ["Adopt"]},
        )
        request = ExtendRequest("session-1", "And Go?", ["a", "b"], thread_id="thread-x")
        workflow = self.compiler.compile(request, resolved)

        prompt = workflow.step("prompt")
        self.assertEqual(prompt.provider_contexts, {"a": {"meta": {"contents": ["x"]}, "continue_thread": True}})
        self.assertEqual(prompt.previous_context["consensus"], ["Adopt"])
        self.assertEqual(workflow.context.thread_id, "thread-x")
        self.assertFalse(workflow.context.session_created)
        # extend never compiles downstream steps
        self.assertEqual([s.kind for s in workflow.steps], ["prompt", "mapping"])

    def test_type_mismatch(self):
        request = ExtendRequest("session-1", "q", ["a"])
        with self.assertRaises(InvalidRequestError):
            self.compiler.compile(request, InitializeContext(providers=["a"]))

    def test_missing_resolved_context(self):
        with self.assertRaises(InvalidRequestError):
            self.compiler.compile(InitializeRequest("q", ["a"]), None)

    def test_no_mapper_available(self):
        request = InitializeRequest("q", [])
        compiler = WorkflowCompiler()
        with self.assertRaises(InvalidRequestError):
            compiler.compile(request, InitializeContext(providers=[]))


class TestCompileRecompute(unittest.TestCase):
    def _resolved(self, step_type, **kw):
        frozen = {
            "a": ProviderResponse("a", "prompt", "A says yes", status="completed"),
            "b": ProviderResponse("b", "prompt", "B says no", status="completed"),
        }
        defaults = dict(
            session_id="session-1",
            source_turn_id="ai-1",
            step_type=step_type,
            target_provider="b",
            frozen_outputs=frozen,
            source_user_message="Should we adopt Rust?",
        )
        defaults.update(kw)
        return RecomputeContext(**defaults)

    def test_prompt_recompute_continues_target_thread(self):
        compiler = WorkflowCompiler()
        request = RecomputeRequest("session-1", "ai-1", "prompt", "b")
        workflow = compiler.compile(request, self._resolved("prompt", provider_context={"context": [1, 2]}))
        (step,) = workflow.steps
        self.assertIsInstance(step, PromptStep)
        self.assertTrue(step.step_id.startswith("batch-retry-"))
        self.assertEqual(step.providers, ["b"])
        self.assertEqual(step.prompt, "Should we adopt Rust?")
        self.assertEqual(step.provider_contexts["b"]["meta"], {"context": [1, 2]})
        self.assertEqual(workflow.context.target_user_turn_id, "ai-1")

    def test_mapping_recompute_uses_frozen_order(self):
        request = RecomputeRequest("session-1", "ai-1", "mapping", "b")
        workflow = WorkflowCompiler().compile(request, self._resolved("mapping"))
        (step,) = workflow.steps
        self.assertIsInstance(step, MappingStep)
        self.assertEqual(step.mapping_provider, "b")
        self.assertEqual(step.provider_order, ["a", "b"])
        self.assertEqual(step.source_historical, {"turn_id": "ai-1", "response_type": "prompt"})

    def test_downstream_recompute(self):
        request = RecomputeRequest("session-1", "ai-1", "refiner", "a")
        workflow = WorkflowCompiler().compile(request, self._resolved("refiner", target_provider="a"))
        (step,) = workflow.steps
        self.assertIsInstance(step, RefinerStep)
        self.assertEqual(step.provider, "a")

    def test_unknown_recompute_type(self):
        request = RecomputeRequest("session-1", "ai-1", "concierge", "a")
        with self.assertRaises(InvalidRequestError):
            WorkflowCompiler().compile(request, self._resolved("concierge"))

    def test_to_dict(self):
        request = RecomputeRequest("session-1", "ai-1", "mapping", "b")
        data = WorkflowCompiler().compile(request, self._resolved("mapping")).to_dict()
        self.assertEqual(data["type"], "recompute")
        self.assertEqual(data["steps"][0]["kind"], "mapping")


if __name__ == "__main__":
    unittest.main()
