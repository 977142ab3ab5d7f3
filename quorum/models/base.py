"""Shared result type and interface for provider adapters."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass
class ProviderResult:
    """Result from a single provider call.

    ``context`` is the continuation metadata the provider needs to resume the
    thread on a later turn; it is stored per provider on the AI turn.
    """
    text: str = ""
    ok: bool = True
    error: str | None = None
    duration_ms: float = 0.0
    status_code: int | None = None
    headers: Dict[str, str] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    usage: Dict[str, Any] | None = None


class Provider(Protocol):
    provider_id: str
    max_input_chars: Optional[int]

    async def generate(
        self,
        prompt: str,
        context: Dict[str, Any] | None = None,
        system: str | None = None,
        timeout: float = 120.0,
    ) -> ProviderResult:
        ...
