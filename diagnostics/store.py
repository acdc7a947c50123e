"""
In-memory session table.

Sessions live only for the lifetime of the process; nothing is persisted
across restarts.
"""

import threading
from typing import Optional

from .errors import SessionNotFound
from .models import Session, SessionStatus


class SessionStore:
    """Thread-safe mapping of session id to Session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session):
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str) -> Session:
        """
        Look up a session.

        Raises:
            SessionNotFound: unknown or evicted id
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def all(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SessionStatus}
        for session in self.all():
            counts[session.status.value] += 1
        return counts

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
