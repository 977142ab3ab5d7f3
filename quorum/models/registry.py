"""Provider registry built from the ``providers`` config section."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from quorum.errors import InvalidRequestError
from quorum.models.base import Provider
from quorum.models.gemini import GeminiClient
from quorum.models.ollama import OllamaClient

logger = logging.getLogger(__name__)


def _build(card: Dict[str, Any]) -> Provider | None:
    kind = card.get("kind", "gemini")
    provider_id = str(card["id"])
    limit = card.get("max_input_chars")
    if kind == "gemini":
        return GeminiClient(
            provider_id=provider_id,
            model=card.get("model", "2.5-flash"),
            api_key=card.get("api_key"),
            temperature=float(card.get("temperature", 0.2)),
            max_input_chars=int(limit) if limit else None,
        )
    if kind == "ollama":
        return OllamaClient(
            provider_id=provider_id,
            model=card.get("model", "llama3.1:8b"),
            base_url=card.get("base_url", "http://localhost:11434"),
            temperature=float(card.get("temperature", 0.2)),
            max_input_chars=int(limit) if limit else None,
        )
    logger.warning(f"Unknown provider kind {kind!r} for {provider_id}, skipping")
    return None


@dataclass
class ProviderRegistry:
    providers: Dict[str, Provider] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cards: List[Dict[str, Any]]) -> "ProviderRegistry":
        registry = cls()
        for card in cards:
            if not card.get("id"):
                continue
            provider = _build(card)
            if provider is not None:
                registry.register(provider)
        return registry

    def register(self, provider: Provider) -> None:
        self.providers[provider.provider_id] = provider

    def get(self, provider_id: str) -> Provider:
        provider = self.providers.get(provider_id)
        if provider is None:
            raise InvalidRequestError(f"Unknown provider: {provider_id}")
        return provider

    def ids(self) -> List[str]:
        return list(self.providers)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self.providers
