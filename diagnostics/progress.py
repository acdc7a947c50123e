"""
Progress aggregation and notification.

Pull: snapshot(session_id) derives a ProgressSnapshot on demand.
Push: subscribe(session_id) returns an async iterator fed by the
scheduler, one snapshot per TaskState transition and exactly one more
when the session reaches a terminal status, after which it ends.
"""

import asyncio
from typing import AsyncIterator

from shared.logging import get_logger

from .models import ProgressSnapshot, Session
from .store import SessionStore

log = get_logger("diagnostics", "progress")

_CLOSED = object()


class ProgressAggregator:
    """Derives session-level progress and fans it out to subscribers."""

    def __init__(self, store: SessionStore):
        self.store = store
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def snapshot(self, session_id: str) -> ProgressSnapshot:
        """
        Current progress of a session.

        Raises:
            SessionNotFound: unknown or evicted id
        """
        return ProgressSnapshot.from_session(self.store.get(session_id))

    def subscribe(self, session_id: str) -> AsyncIterator[ProgressSnapshot]:
        """
        Stream snapshots until the session is terminal.

        The session is looked up (and the subscription registered) right
        away, so no transition published after this call is missed.

        Raises:
            SessionNotFound: unknown or evicted id
        """
        session = self.store.get(session_id)
        if session.is_terminal:
            return self._replay(ProgressSnapshot.from_session(session))

        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(session_id, []).append(queue)
        log.debug("diagnostics.progress.subscribed", session_id=session_id)
        return self._stream(session_id, queue)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    def publish(self, session: Session, message: str = "") -> ProgressSnapshot:
        """Push a snapshot after a transition. Called by the scheduler only."""
        snapshot = ProgressSnapshot.from_session(session, message)
        for queue in self._subscribers.get(session.id, []):
            queue.put_nowait(snapshot)
        return snapshot

    def close(self, session: Session, message: str = "") -> ProgressSnapshot:
        """Push the final snapshot and end every subscription of a session."""
        snapshot = ProgressSnapshot.from_session(session, message)
        queues = self._subscribers.pop(session.id, [])
        for queue in queues:
            queue.put_nowait(snapshot)
            queue.put_nowait(_CLOSED)
        log.debug("diagnostics.progress.closed",
                  session_id=session.id, subscribers=len(queues))
        return snapshot

    async def _replay(self, snapshot: ProgressSnapshot) -> AsyncIterator[ProgressSnapshot]:
        yield snapshot

    async def _stream(self, session_id: str, queue: asyncio.Queue) -> AsyncIterator[ProgressSnapshot]:
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._discard(session_id, queue)

    def _discard(self, session_id: str, queue: asyncio.Queue):
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[session_id]
