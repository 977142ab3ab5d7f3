"""Workflow and turn messages, and the in-process bus that delivers them.

Example:
    >>> bus = MessageBus()
    >>> bus.subscribe(lambda msg: print(msg.type))
    >>> await bus.publish(WorkflowMessage(WORKFLOW_PROGRESS, "session-1", "wf-1", {}))
"""
from __future__ import annotations

import inspect
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

WORKFLOW_PROGRESS = "WORKFLOW_PROGRESS"
WORKFLOW_STEP_UPDATE = "WORKFLOW_STEP_UPDATE"
WORKFLOW_PARTIAL_COMPLETE = "WORKFLOW_PARTIAL_COMPLETE"
WORKFLOW_COMPLETE = "WORKFLOW_COMPLETE"
TURN_CREATED = "TURN_CREATED"
TURN_FINALIZED = "TURN_FINALIZED"


@dataclass
class WorkflowMessage:
    """A single lifecycle message."""

    type: str
    session_id: str
    workflow_id: str | None = None
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, line: str) -> "WorkflowMessage":
        return cls(**json.loads(line))


Subscriber = Callable[[WorkflowMessage], Any]


class MessageBus:
    """Fan messages out to subscribers; async subscribers are awaited.

    Args:
        history_size: How many recent messages to keep for inspection.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._subscribers: List[Subscriber] = []
        self.history: Deque[WorkflowMessage] = deque(maxlen=history_size)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    async def publish(self, message: WorkflowMessage) -> None:
        self.history.append(message)
        for callback in list(self._subscribers):
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"Subscriber failed on {message.type}: {exc}")

    def of_type(self, message_type: str, session_id: str | None = None) -> List[WorkflowMessage]:
        return [
            m for m in self.history
            if m.type == message_type and (session_id is None or m.session_id == session_id)
        ]
