from __future__ import annotations

import logging
import time
import uuid
from threading import RLock
from typing import TYPE_CHECKING, Any, Dict, List

from .contracts import AuditEvent

if TYPE_CHECKING:
    from veritas.live.session import LiveSession

logger = logging.getLogger(__name__)


class InMemorySessionStore:
    def __init__(self, ttl_seconds: int):
        self._ttl_seconds = ttl_seconds
        self._lock = RLock()
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def create_session(self) -> str:
        session_id = uuid.uuid4().hex
        now = time.time()
        with self._lock:
            self._sessions[session_id] = {
                "session_id": session_id,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self._ttl_seconds,
                "runner": None,
                "audit_events": [],
            }
        return session_id

    def _touch(self, session_id: str) -> None:
        now = time.time()
        session = self._sessions[session_id]
        session["updated_at"] = now
        session["expires_at"] = now + self._ttl_seconds

    def _require(self, session_id: str) -> Dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session_id: {session_id}")
        return session

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def set_runner(self, session_id: str, runner: "LiveSession") -> None:
        with self._lock:
            self._require(session_id)["runner"] = runner
            self._touch(session_id)

    def get_runner(self, session_id: str) -> "LiveSession":
        with self._lock:
            session = self._require(session_id)
            runner = session["runner"]
            if runner is None:
                raise KeyError(f"Session has no live runner: {session_id}")
            self._touch(session_id)
            return runner

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                # Late events from a destroyed session are not retained.
                return
            session["audit_events"].append(event)
            self._touch(session_id)

    def get_audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._require(session_id)["audit_events"])

    def destroy_session(self, session_id: str, reason: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        runner = session.get("runner")
        if runner is not None:
            runner.end(reason)
        logger.info("Destroyed session %s (%s)", session_id, reason)

    def cleanup_expired_sessions(self) -> int:
        now = time.time()
        expired = []
        with self._lock:
            for session_id, session in self._sessions.items():
                if session["expires_at"] <= now:
                    expired.append(session_id)
        for session_id in expired:
            self.destroy_session(session_id, reason="ttl_expired")
        return len(expired)
