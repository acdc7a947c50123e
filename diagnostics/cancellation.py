"""
Session-scoped cancellation.

Cancellation is cooperative for in-process work (executors and workers
watch the session's asyncio.Event) and forceful for out-of-process work
(registered helper processes are terminated).
"""

import asyncio

from shared.logging import get_logger

from .processes import ProcessRegistry

log = get_logger("diagnostics", "cancellation")


class CancellationController:
    """Owns one cancel signal per session."""

    def __init__(self, processes: ProcessRegistry):
        self.processes = processes
        self._signals: dict[str, asyncio.Event] = {}

    def signal_for(self, session_id: str) -> asyncio.Event:
        """Get (or create) the cancel signal observed by a session's executors."""
        signal = self._signals.get(session_id)
        if signal is None:
            signal = asyncio.Event()
            self._signals[session_id] = signal
        return signal

    def is_cancel_requested(self, session_id: str) -> bool:
        signal = self._signals.get(session_id)
        return signal is not None and signal.is_set()

    async def request_cancel(self, session_id: str) -> bool:
        """
        Raise the session's cancel signal and stop its helper processes.

        Returns False if cancellation had already been requested.
        """
        signal = self.signal_for(session_id)
        if signal.is_set():
            return False

        signal.set()
        log.info("diagnostics.cancellation.requested", session_id=session_id)

        stopped = await self.processes.terminate(session_id)
        if stopped:
            log.info("diagnostics.cancellation.processes_terminated",
                     session_id=session_id, count=stopped)
        return True

    def release(self, session_id: str):
        """Drop the signal of a session that is being removed."""
        self._signals.pop(session_id, None)
