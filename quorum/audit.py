"""Structured audit logging for quorum workflows."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import json
import time

from quorum.events import WorkflowMessage


@dataclass
class AuditLog:
    path: Path

    def log(self, event: str, data: Dict[str, Any] | None = None) -> None:
        payload = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "event": event,
            "data": data or {},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, default=str) + "\n")

    def record(self, message: WorkflowMessage) -> None:
        """Bus subscriber: append lifecycle messages, skipping progress noise."""
        if message.type == "WORKFLOW_PROGRESS":
            return
        self.log(message.type, {
            "session_id": message.session_id,
            "workflow_id": message.workflow_id,
            **message.payload,
        })
