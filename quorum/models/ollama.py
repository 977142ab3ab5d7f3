"""Minimal async Ollama client for local inference."""
from __future__ import annotations

from typing import Any, Dict, Optional
import time

import httpx

from quorum.models.base import ProviderResult


class OllamaClient:
    def __init__(
        self,
        provider_id: str = "ollama",
        model: str = "llama3.1:8b",
        base_url: str = "http://localhost:11434",
        temperature: float = 0.2,
        max_input_chars: Optional[int] = None,
    ) -> None:
        self.provider_id = provider_id
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_input_chars = max_input_chars

    async def list_models(self) -> list[dict]:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(f"{self.base_url}/api/tags")
            resp.raise_for_status()
            return resp.json().get("models", [])

    async def generate(
        self,
        prompt: str,
        context: Dict[str, Any] | None = None,
        system: Optional[str] = None,
        timeout: float = 120.0,
    ) -> ProviderResult:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature,
            },
        }
        if system:
            payload["system"] = system
        if context and context.get("context"):
            payload["context"] = context["context"]

        start = time.perf_counter()
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(f"{self.base_url}/api/generate", json=payload)
        duration = (time.perf_counter() - start) * 1000
        if resp.status_code != 200:
            return ProviderResult(
                ok=False,
                error=f"HTTP {resp.status_code}: {resp.text[:500]}",
                duration_ms=duration,
                status_code=resp.status_code,
                headers=dict(resp.headers),
            )
        data = resp.json()
        return ProviderResult(
            text=data.get("response", ""),
            duration_ms=duration,
            ok=True,
            status_code=200,
            context={"context": data.get("context") or []},
        )
