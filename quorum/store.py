"""Persistent JSON store for quorum sessions."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List

from quorum.errors import SessionNotFoundError
from quorum.session import Session

try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

logger = logging.getLogger(__name__)


@dataclass
class SessionStore:
    data_dir: Path

    def _sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    def session_dir(self, session_id: str) -> Path:
        return self._sessions_dir() / session_id

    def _session_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "session.json"

    def exists(self, session_id: str) -> bool:
        return self._session_path(session_id).exists()

    def save(self, session: Session) -> None:
        if self.exists(session.id):
            self._locked_update(session.id, lambda _: session.to_dict())
        else:
            self._write(session.id, session.to_dict())

    def load(self, session_id: str) -> Session:
        data = self._read(session_id)
        if data is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return Session.from_dict(data)

    def get(self, session_id: str) -> Session | None:
        data = self._read(session_id)
        return Session.from_dict(data) if data else None

    def update(self, session_id: str, mutator: Callable[[Session], None]) -> Session:
        """Load, mutate and write a session under an exclusive file lock."""
        result: Dict[str, Session] = {}

        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            session = Session.from_dict(data)
            mutator(session)
            session.touch()
            result["session"] = session
            return session.to_dict()

        if self._locked_update(session_id, _update) is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return result["session"]

    def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        sessions = []
        if not self._sessions_dir().exists():
            return sessions
        paths = [p / "session.json" for p in self._sessions_dir().iterdir() if (p / "session.json").exists()]
        paths.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for path in paths[:limit]:
            try:
                sessions.append(Session.from_dict(json.loads(path.read_text())).summary())
            except (ValueError, KeyError) as exc:
                logger.warning(f"Skipping unreadable session file {path}: {exc}")
        return sessions

    def delete(self, session_id: str) -> bool:
        path = self._session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _read(self, session_id: str) -> Dict[str, Any] | None:
        path = self._session_path(session_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except ValueError as exc:
            logger.warning(f"Session file {path} is corrupt: {exc}")
            return None

    def _write(self, session_id: str, payload: Dict[str, Any]) -> None:
        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / "session.json").write_text(json.dumps(payload, indent=2))

    def _locked_update(self, session_id: str, updater) -> Dict[str, Any] | None:
        path = self._session_path(session_id)
        if not path.exists():
            return None
        if fcntl is None:
            current = self._read(session_id)
            if not current:
                return None
            updated = updater(current)
            self._write(session_id, updated)
            return updated
        with path.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                handle.seek(0)
                data = handle.read()
                if not data.strip():
                    return None
                updated = updater(json.loads(data))
                handle.seek(0)
                handle.truncate()
                handle.write(json.dumps(updated, indent=2))
                return updated
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
