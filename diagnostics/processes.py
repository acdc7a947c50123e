"""
Tracking of external processes spawned by diagnostic tasks.

Every process a task launches is registered here under its session and
task so cancellation can terminate it instead of abandoning it. On POSIX
helpers run in their own process group and the whole group is signalled;
on Windows the process tree is closed with taskkill, then forced.
"""

import asyncio
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger

log = get_logger("diagnostics", "processes")


@dataclass(frozen=True)
class TrackedProcess:
    """A spawned helper and how to signal it."""
    session_id: str
    task_id: str
    process: asyncio.subprocess.Process
    process_group: bool = False

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class ProcessRegistry:
    """
    Thread-safe registry of spawned helper processes.

    Uses a lock to protect the table from executors registering handles
    while a cancel request is walking it.
    """

    def __init__(self, grace_seconds: float = 5.0):
        self.grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._processes: dict[str, list[TrackedProcess]] = {}

    def register(
        self,
        session_id: str,
        task_id: str,
        process: asyncio.subprocess.Process,
        process_group: bool = False,
    ) -> TrackedProcess:
        """Record a process launched on behalf of a task."""
        tracked = TrackedProcess(session_id, task_id, process, process_group)
        with self._lock:
            self._processes.setdefault(session_id, []).append(tracked)
        log.debug("diagnostics.processes.registered",
                  session_id=session_id, task_id=task_id, pid=process.pid)
        return tracked

    def unregister(self, tracked: TrackedProcess):
        """Forget a process once its task no longer needs it."""
        with self._lock:
            entries = self._processes.get(tracked.session_id)
            if not entries:
                return
            entries[:] = [t for t in entries if t is not tracked]
            if not entries:
                del self._processes[tracked.session_id]

    def get(self, session_id: str, task_id: Optional[str] = None) -> list[TrackedProcess]:
        """Running processes for a session (optionally one task)."""
        with self._lock:
            entries = list(self._processes.get(session_id, []))
        return [
            t for t in entries
            if t.running and (task_id is None or t.task_id == task_id)
        ]

    def is_running(self, session_id: str, task_id: Optional[str] = None) -> bool:
        return bool(self.get(session_id, task_id))

    def get_pids(self, session_id: str) -> list[int]:
        return [t.process.pid for t in self.get(session_id)]

    async def terminate(self, session_id: str, task_id: Optional[str] = None) -> int:
        """
        Terminate every running process of a session (or one task).

        Returns the number of processes that had to be stopped.
        """
        targets = self.get(session_id, task_id)
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self.terminate_process(t) for t in targets),
            return_exceptions=True,
        )
        stopped = 0
        for tracked, result in zip(targets, results):
            if isinstance(result, BaseException):
                log.error("diagnostics.processes.terminate_failed",
                          session_id=session_id, task_id=tracked.task_id,
                          pid=tracked.process.pid, error=str(result))
            elif result:
                stopped += 1

        log.info("diagnostics.processes.terminated",
                 session_id=session_id, task_id=task_id, count=stopped)
        return stopped

    async def terminate_process(self, tracked: TrackedProcess) -> bool:
        """
        Stop one process: terminate, wait for the grace period, then kill.

        Returns True if the process was still running.
        """
        proc = tracked.process
        if proc.returncode is not None:
            return False

        try:
            await self._terminate(tracked)
        except ProcessLookupError:
            return False

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            log.warning("diagnostics.processes.kill",
                        session_id=tracked.session_id, task_id=tracked.task_id,
                        pid=proc.pid)
            try:
                await self._kill(tracked)
            except ProcessLookupError:
                pass
            await proc.wait()
        return True

    def _send(self, tracked: TrackedProcess, sig: int):
        if tracked.process_group and sys.platform != "win32":
            os.killpg(tracked.process.pid, sig)
        else:
            tracked.process.send_signal(sig)

    async def _terminate(self, tracked: TrackedProcess):
        if sys.platform == "win32":
            # Ask the whole tree to close while the parent still anchors it
            await self._taskkill(tracked, force=False)
        else:
            self._send(tracked, signal.SIGTERM)

    async def _kill(self, tracked: TrackedProcess):
        if sys.platform == "win32":
            await self._taskkill(tracked, force=True)
            if tracked.process.returncode is None:
                tracked.process.kill()
        else:
            self._send(tracked, signal.SIGKILL)

    async def _taskkill(self, tracked: TrackedProcess, force: bool):
        argv = ["taskkill", "/T", "/PID", str(tracked.process.pid)]
        if force:
            argv.insert(1, "/F")
        killer = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()

    async def cleanup_all(self) -> int:
        """Terminate every tracked process of every session."""
        with self._lock:
            session_ids = list(self._processes)

        stopped = 0
        for session_id in session_ids:
            stopped += await self.terminate(session_id)

        with self._lock:
            self._processes.clear()
        return stopped
