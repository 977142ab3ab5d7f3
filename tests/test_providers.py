"""Tests for the provider adapters and registry."""
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from quorum.errors import InvalidRequestError
from quorum.models.gemini import GeminiClient
from quorum.models.ollama import OllamaClient
from quorum.models.registry import ProviderRegistry


def _client_returning(response):
    mock_client = MagicMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(return_value=response)
    mock_client.get = AsyncMock(return_value=response)
    return mock_client


def _response(status_code=200, payload=None, text="", headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = text
    response.headers = headers or {}
    return response


class TestGeminiClient(unittest.IsolatedAsyncioTestCase):
    async def test_no_api_key_returns_error(self):
        with patch.dict("os.environ", {"GEMINI_API_KEY": ""}):
            client = GeminiClient(api_key="")
        self.assertFalse(client.available)
        result = await client.generate("Hello")
        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 401)
        self.assertIn("GEMINI_API_KEY", result.error)

    @patch("quorum.models.gemini.httpx.AsyncClient")
    async def test_successful_generation(self, mock_client_cls):
        mock_client = _client_returning(_response(payload={
            "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there!"}]}}],
            "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 3, "totalTokenCount": 8},
        }))
        mock_client_cls.return_value = mock_client

        client = GeminiClient(api_key="test-key", model="2.5-pro")
        result = await client.generate("Say hello", system="Be brief")

        self.assertTrue(result.ok)
        self.assertEqual(result.text, "Hello there!")
        self.assertEqual(result.usage["total_tokens"], 8)
        url = mock_client.post.call_args.args[0]
        self.assertIn("models/gemini-2.5-pro:generateContent", url)
        body = mock_client.post.call_args.kwargs["json"]
        self.assertEqual(body["systemInstruction"]["parts"][0]["text"], "Be brief")
        self.assertEqual(
            result.context["contents"],
            [
                {"role": "user", "parts": [{"text": "Say hello"}]},
                {"role": "model", "parts": [{"text": "Hello there!"}]},
            ],
        )

    @patch("quorum.models.gemini.httpx.AsyncClient")
    async def test_context_replays_history(self, mock_client_cls):
        mock_client = _client_returning(_response(payload={
            "candidates": [{"content": {"parts": [{"text": "Go is fine too."}]}}],
        }))
        mock_client_cls.return_value = mock_client
        history = [
            {"role": "user", "parts": [{"text": "Rust?"}]},
            {"role": "model", "parts": [{"text": "Yes."}]},
        ]

        result = await GeminiClient(api_key="k").generate("And Go?", context={"contents": history})

        body = mock_client.post.call_args.kwargs["json"]
        self.assertEqual(body["contents"][:2], history)
        self.assertEqual(body["contents"][2]["parts"][0]["text"], "And Go?")
        self.assertEqual(len(result.context["contents"]), 4)
        self.assertEqual(len(history), 2)

    @patch("quorum.models.gemini.httpx.AsyncClient")
    async def test_http_error_keeps_status_and_headers(self, mock_client_cls):
        mock_client_cls.return_value = _client_returning(
            _response(status_code=429, text="quota", headers={"Retry-After": "7"})
        )
        result = await GeminiClient(api_key="k").generate("test")
        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 429)
        self.assertEqual(result.headers["Retry-After"], "7")
        self.assertIn("429", result.error)

    @patch("quorum.models.gemini.httpx.AsyncClient")
    async def test_blocked_prompt(self, mock_client_cls):
        mock_client_cls.return_value = _client_returning(_response(payload={
            "candidates": [],
            "promptFeedback": {"blockReason": "SAFETY"},
        }))
        result = await GeminiClient(api_key="k").generate("test")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "Response blocked: SAFETY")

    @patch("quorum.models.gemini.httpx.AsyncClient")
    async def test_no_candidates(self, mock_client_cls):
        mock_client_cls.return_value = _client_returning(_response(payload={"candidates": []}))
        result = await GeminiClient(api_key="k").generate("test")
        self.assertEqual(result.error, "No candidates in response")


class TestOllamaClient(unittest.IsolatedAsyncioTestCase):
    @patch("quorum.models.ollama.httpx.AsyncClient")
    async def test_generate_passes_context_tokens(self, mock_client_cls):
        mock_client = _client_returning(_response(payload={"response": "Local answer", "context": [7, 8, 9]}))
        mock_client_cls.return_value = mock_client

        result = await OllamaClient(model="qwen").generate("hi", context={"context": [1, 2]})

        self.assertTrue(result.ok)
        self.assertEqual(result.text, "Local answer")
        self.assertEqual(result.context, {"context": [7, 8, 9]})
        payload = mock_client.post.call_args.kwargs["json"]
        self.assertEqual(payload["context"], [1, 2])
        self.assertFalse(payload["stream"])
        self.assertEqual(payload["model"], "qwen")

    @patch("quorum.models.ollama.httpx.AsyncClient")
    async def test_generate_error(self, mock_client_cls):
        mock_client_cls.return_value = _client_returning(_response(status_code=500, text="model not loaded"))
        result = await OllamaClient().generate("hi")
        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 500)

    @patch("quorum.models.ollama.httpx.AsyncClient")
    async def test_list_models(self, mock_client_cls):
        mock_client_cls.return_value = _client_returning(_response(payload={"models": [{"name": "qwen"}]}))
        self.assertEqual(await OllamaClient().list_models(), [{"name": "qwen"}])


class TestProviderRegistry(unittest.TestCase):
    def test_from_config(self):
        registry = ProviderRegistry.from_config([
            {"id": "flash", "kind": "gemini", "model": "2.5-flash", "max_input_chars": 30000},
            {"id": "llama", "kind": "ollama", "base_url": "http://gpu:11434/"},
            {"id": "mystery", "kind": "carrier-pigeon"},
            {"kind": "gemini"},
        ])
        self.assertEqual(registry.ids(), ["flash", "llama"])
        self.assertIsInstance(registry.get("flash"), GeminiClient)
        self.assertEqual(registry.get("flash").max_input_chars, 30000)
        self.assertEqual(registry.get("llama").base_url, "http://gpu:11434")
        self.assertIn("llama", registry)
        self.assertNotIn("mystery", registry)

    def test_unknown_provider(self):
        with self.assertRaises(InvalidRequestError):
            ProviderRegistry().get("nope")


if __name__ == "__main__":
    unittest.main()
