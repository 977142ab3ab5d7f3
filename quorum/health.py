"""Per-provider circuit breaker used by the fan-out."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass
class ProviderHealth:
    state: str = CLOSED
    consecutive_failures: int = 0
    opened_at: float = 0.0
    total_calls: int = 0
    total_failures: int = 0


@dataclass
class CircuitBreaker:
    """Excludes providers that fail repeatedly.

    closed -> open after ``failure_threshold`` consecutive failures; open ->
    half_open once ``cooldown_seconds`` elapse; a half-open success closes
    the circuit and a half-open failure reopens it.
    """

    failure_threshold: int = 3
    cooldown_seconds: float = 300.0
    clock: Callable[[], float] = time.monotonic
    _health: Dict[str, ProviderHealth] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    @classmethod
    def from_config(cls, config: Dict) -> "CircuitBreaker":
        return cls(
            failure_threshold=int(config.get("failure_threshold", 3)),
            cooldown_seconds=float(config.get("cooldown_seconds", 300)),
        )

    def _entry(self, provider_id: str) -> ProviderHealth:
        entry = self._health.get(provider_id)
        if entry is None:
            entry = ProviderHealth()
            self._health[provider_id] = entry
        if entry.state == OPEN and self.clock() - entry.opened_at >= self.cooldown_seconds:
            entry.state = HALF_OPEN
        return entry

    def state(self, provider_id: str) -> str:
        with self._lock:
            return self._entry(provider_id).state

    def can_call(self, provider_id: str) -> bool:
        return self.state(provider_id) != OPEN

    def retry_after_ms(self, provider_id: str) -> int | None:
        with self._lock:
            entry = self._entry(provider_id)
            if entry.state != OPEN:
                return None
            remaining = self.cooldown_seconds - (self.clock() - entry.opened_at)
            return max(0, int(remaining * 1000))

    def record_success(self, provider_id: str) -> None:
        with self._lock:
            entry = self._entry(provider_id)
            entry.total_calls += 1
            if entry.state != CLOSED:
                logger.info(f"Circuit closed for {provider_id}")
            entry.state = CLOSED
            entry.consecutive_failures = 0

    def record_failure(self, provider_id: str) -> None:
        with self._lock:
            entry = self._entry(provider_id)
            entry.total_calls += 1
            entry.total_failures += 1
            entry.consecutive_failures += 1
            if entry.state == HALF_OPEN or entry.consecutive_failures >= self.failure_threshold:
                if entry.state != OPEN:
                    logger.warning(
                        f"Circuit opened for {provider_id} after {entry.consecutive_failures} failures"
                    )
                entry.state = OPEN
                entry.opened_at = self.clock()

    def snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            return {
                pid: {
                    "state": self._entry(pid).state,
                    "consecutive_failures": entry.consecutive_failures,
                    "total_calls": entry.total_calls,
                    "total_failures": entry.total_failures,
                }
                for pid, entry in self._health.items()
            }
