"""Native Gemini API client for quorum."""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List

import httpx

from quorum.models.base import ProviderResult

logger = logging.getLogger(__name__)


class GeminiClient:
    """Async Gemini client using httpx.

    Continuation context is the running ``contents`` history, so a continued
    thread replays prior turns to the stateless REST endpoint.
    """

    MODEL_MAP = {
        "2.5-flash": "gemini-2.5-flash",
        "2.5-pro": "gemini-2.5-pro",
        "2.0-flash": "gemini-2.0-flash",
        "1.5-flash": "gemini-1.5-flash",
        "1.5-pro": "gemini-1.5-pro",
    }

    def __init__(
        self,
        provider_id: str = "gemini",
        model: str = "2.5-flash",
        api_key: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.2,
        max_input_chars: int | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.model = model
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_input_chars = max_input_chars

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        prompt: str,
        context: Dict[str, Any] | None = None,
        system: str | None = None,
        timeout: float = 120.0,
    ) -> ProviderResult:
        if not self.api_key:
            return ProviderResult(ok=False, error="GEMINI_API_KEY not set", status_code=401)

        model_id = self.MODEL_MAP.get(self.model, self.model)
        url = f"{self.base_url}/models/{model_id}:generateContent?key={self.api_key}"

        history: List[Dict[str, Any]] = list((context or {}).get("contents") or [])
        contents = history + [{"role": "user", "parts": [{"text": prompt}]}]
        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.temperature,
            },
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        start = time.perf_counter()
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=body)
        duration_ms = (time.perf_counter() - start) * 1000

        if response.status_code != 200:
            return ProviderResult(
                ok=False,
                error=f"HTTP {response.status_code}: {response.text[:500]}",
                duration_ms=duration_ms,
                status_code=response.status_code,
                headers=dict(response.headers),
            )

        data = response.json()
        candidates = data.get("candidates", [])
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            error = f"Response blocked: {reason}" if reason else "No candidates in response"
            return ProviderResult(ok=False, error=error, duration_ms=duration_ms)

        parts = candidates[0].get("content", {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts)

        usage_meta = data.get("usageMetadata", {})
        usage = {
            "prompt_tokens": usage_meta.get("promptTokenCount", 0),
            "completion_tokens": usage_meta.get("candidatesTokenCount", 0),
            "total_tokens": usage_meta.get("totalTokenCount", 0),
        }
        contents.append({"role": "model", "parts": [{"text": text}]})

        return ProviderResult(
            text=text,
            ok=True,
            duration_ms=duration_ms,
            status_code=200,
            context={"contents": contents, "model": model_id},
            usage=usage,
        )
