"""
Session scheduler.

Owns every Session and drives its state machine:

    pending -> running -> completed | cancelled | failed

Executors never mutate a Session. Each session has one reporting channel
(an asyncio.Queue) and one reporter coroutine that applies the
transitions executors send, so near-simultaneous completions are
serialized. Tasks are admitted FIFO, in selection order, into a bounded
worker pool.
"""

import asyncio
import shutil
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from shared.logging import get_logger, correlation_context

from .cancellation import CancellationController
from .catalog import TaskCatalog
from .errors import ElevationRequired, InvalidSelection, SessionNotFound, SessionNotTerminal
from .executor import TaskExecutor, describe_error
from .models import (
    OutputFormat,
    Session,
    SessionStatus,
    TaskDescriptor,
    TaskState,
    TaskStatus,
    TaskTransition,
)
from .packager import ResultPackager
from .privilege import PrivilegeContext
from .progress import ProgressAggregator
from .store import SessionStore
from .system_info import collect_system_info

log = get_logger("diagnostics", "scheduler")


@dataclass
class SessionRuntime:
    """Scheduler-private execution state of one session."""
    session: Session
    descriptors: list[TaskDescriptor]
    cancel_signal: asyncio.Event
    channel: asyncio.Queue = field(default_factory=asyncio.Queue)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    workers: list[asyncio.Task] = field(default_factory=list)
    reporter: Optional[asyncio.Task] = None


def transition_message(state: TaskState) -> str:
    if state.status == TaskStatus.RUNNING:
        return f"Running {state.display_name}..."
    if state.status == TaskStatus.SUCCEEDED:
        return f"{state.display_name} completed"
    if state.status == TaskStatus.FAILED:
        return f"{state.display_name} failed: {state.error}"
    if state.status == TaskStatus.CANCELLED:
        return f"{state.display_name} cancelled"
    return ""


def terminal_message(session: Session) -> str:
    if session.status == SessionStatus.FAILED:
        return f"Diagnostics failed: {session.scheduler_error}"
    if session.status == SessionStatus.CANCELLED:
        return "Diagnostics cancelled"
    failed = len(session.states_with(TaskStatus.FAILED))
    if failed:
        return f"Diagnostics completed with {failed} failed task(s)"
    return "Diagnostics completed successfully"


class SessionScheduler:
    """
    Creates sessions, dispatches their tasks and applies reported transitions.

    Implements:
    - Selection validation (duplicates, unknown ids, elevation gating)
    - Bounded worker pool with FIFO admission
    - Single-writer transition channel per session
    - Idempotent cancellation
    - Retention-based eviction of finished sessions
    """

    def __init__(
        self,
        catalog: TaskCatalog,
        store: SessionStore,
        progress: ProgressAggregator,
        packager: ResultPackager,
        cancellation: CancellationController,
        executor: TaskExecutor,
        privilege: PrivilegeContext,
        max_workers: int = 4,
        retention_seconds: float = 3600.0,
        default_output_format: OutputFormat = OutputFormat.BOTH,
        materialize_on_complete: bool = True,
        system_info_provider: Callable[[bool], dict] = collect_system_info,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.catalog = catalog
        self.store = store
        self.progress = progress
        self.packager = packager
        self.cancellation = cancellation
        self.executor = executor
        self.privilege = privilege
        self.max_workers = max_workers
        self.retention_seconds = retention_seconds
        self.default_output_format = default_output_format
        self.materialize_on_complete = materialize_on_complete
        self.system_info_provider = system_info_provider

        self._runtimes: dict[str, SessionRuntime] = {}

    # ==================== Lifecycle ====================

    def create(
        self,
        selected_ids: Iterable[str],
        privilege: Optional[PrivilegeContext] = None,
        output_format: Union[OutputFormat, str, None] = None,
    ) -> Session:
        """
        Validate a selection and create a pending session.

        Nothing is stored unless every check passes.

        Raises:
            InvalidSelection: empty selection or duplicate ids
            UnknownTaskIds: ids absent from the catalog
            ElevationRequired: gated tasks requested while unelevated
        """
        selected = list(selected_ids)
        if not selected:
            raise InvalidSelection("No tasks selected")

        counts = Counter(selected)
        duplicates = [tid for tid in counts if counts[tid] > 1]
        if duplicates:
            raise InvalidSelection(
                f"Duplicate task ids: {', '.join(duplicates)}", duplicates
            )

        descriptors = self.catalog.resolve(selected)

        privilege = privilege or self.privilege
        gated = [d.id for d in descriptors if d.requires_elevation]
        if gated and not privilege.elevated:
            log.warning("diagnostics.scheduler.elevation_required", task_ids=gated)
            raise ElevationRequired(gated)

        session = Session(
            id=uuid.uuid4().hex,
            selected_task_ids=tuple(selected),
            task_states={d.id: TaskState(d.id, d.display_name) for d in descriptors},
            output_format=OutputFormat(output_format) if output_format else self.default_output_format,
        )
        self._runtimes[session.id] = SessionRuntime(
            session=session,
            descriptors=descriptors,
            cancel_signal=self.cancellation.signal_for(session.id),
        )
        self.store.add(session)

        log.info("diagnostics.scheduler.session_created",
                 session_id=session.id, tasks=len(selected),
                 output_format=session.output_format.value)
        return session

    async def start(self, session_id: str) -> Session:
        """
        Dispatch every selected task of a pending session.

        Starting a session that is not pending is a no-op.
        """
        runtime = self._runtime(session_id)
        session = runtime.session
        if session.status != SessionStatus.PENDING or runtime.cancel_signal.is_set():
            return session

        try:
            (self.executor.work_root / session.id).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            await self._fail(runtime, f"Could not create work directory: {e}")
            return session

        session.started_at = time.time()
        session.refresh_status()
        self.progress.publish(session, "Diagnostics started")

        admission: asyncio.Queue = asyncio.Queue()
        for descriptor in runtime.descriptors:
            admission.put_nowait(descriptor)

        with correlation_context(session_id=session.id):
            runtime.reporter = asyncio.create_task(self._report_loop(runtime))
            pool_size = min(self.max_workers, len(runtime.descriptors))
            runtime.workers = [
                asyncio.create_task(self._worker(runtime, admission))
                for _ in range(pool_size)
            ]

        log.info("diagnostics.scheduler.session_started",
                 session_id=session.id, workers=len(runtime.workers))
        return session

    async def cancel(self, session_id: str) -> SessionStatus:
        """
        Request cancellation of a session.

        Idempotent: cancelling a terminal or already-cancelling session
        returns its current status.
        """
        runtime = self._runtime(session_id)
        session = runtime.session
        if session.is_terminal or session.cancel_requested:
            log.debug("diagnostics.scheduler.cancel_noop",
                      session_id=session.id, status=session.status.value)
            return session.status

        session.cancel_requested = True
        was_pending = session.status == SessionStatus.PENDING
        await self.cancellation.request_cancel(session.id)

        if was_pending:
            # Nothing was dispatched, so the scheduler settles every task itself
            for task_id in session.selected_task_ids:
                await self._apply(runtime, TaskTransition(task_id, TaskStatus.CANCELLED))

        log.info("diagnostics.scheduler.session_cancel_requested",
                 session_id=session.id, status=session.status.value)
        return session.status

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> Session:
        """Wait until a session is terminal and its bundle is written."""
        runtime = self._runtime(session_id)
        await asyncio.wait_for(runtime.done.wait(), timeout=timeout)
        return runtime.session

    def get(self, session_id: str) -> Session:
        return self.store.get(session_id)

    def remove(self, session_id: str) -> Session:
        """
        Drop a finished session and its scratch files.

        Raises:
            SessionNotTerminal: tasks may still be running
        """
        runtime = self._runtime(session_id)
        if not runtime.done.is_set():
            raise SessionNotTerminal(session_id, runtime.session.status.value)

        del self._runtimes[session_id]
        self.store.remove(session_id)
        self.cancellation.release(session_id)
        self.packager.forget(session_id)
        shutil.rmtree(self.executor.work_root / session_id, ignore_errors=True)

        log.info("diagnostics.scheduler.session_removed", session_id=session_id)
        return runtime.session

    def evict_expired(self, now: Optional[float] = None) -> list[str]:
        """Remove finished sessions older than the retention window."""
        now = now if now is not None else time.time()
        expired = [
            sid for sid, runtime in self._runtimes.items()
            if runtime.done.is_set()
            and runtime.session.completed_at is not None
            and now - runtime.session.completed_at > self.retention_seconds
        ]
        for session_id in expired:
            self.remove(session_id)

        if expired:
            log.info("diagnostics.scheduler.evicted", count=len(expired))
        return expired

    async def shutdown(self, timeout: float = 30.0):
        """Cancel every unfinished session and wait for it to settle."""
        unfinished = [r for r in self._runtimes.values() if not r.done.is_set()]
        for runtime in unfinished:
            await self.cancel(runtime.session.id)

        if unfinished:
            done, pending = await asyncio.wait(
                [asyncio.create_task(r.done.wait()) for r in unfinished],
                timeout=timeout,
            )
            for waiter in pending:
                waiter.cancel()
            for runtime in unfinished:
                for task in [*runtime.workers, runtime.reporter]:
                    if task is not None and not task.done():
                        task.cancel()

        await self.executor.processes.cleanup_all()
        log.info("diagnostics.scheduler.shutdown", cancelled=len(unfinished))

    def active_sessions(self) -> int:
        return sum(1 for r in self._runtimes.values() if not r.done.is_set())

    # ==================== Internals ====================

    def _runtime(self, session_id: str) -> SessionRuntime:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            raise SessionNotFound(session_id)
        return runtime

    async def _worker(self, runtime: SessionRuntime, admission: asyncio.Queue):
        """Pull tasks in FIFO order until the admission queue is empty."""
        session_id = runtime.session.id
        while True:
            try:
                descriptor = admission.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                await self.executor.run(
                    descriptor, runtime.cancel_signal, session_id, runtime.channel.put
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception(e, "diagnostics.scheduler.executor_error", {
                    "session_id": session_id,
                    "task_id": descriptor.id,
                })
                await runtime.channel.put(TaskTransition(
                    descriptor.id, TaskStatus.FAILED, error=describe_error(e)
                ))

    async def _report_loop(self, runtime: SessionRuntime):
        """Sole writer of the session: apply transitions until terminal."""
        session = runtime.session
        while not session.is_terminal:
            transition = await runtime.channel.get()
            try:
                await self._apply(runtime, transition)
            except Exception as e:
                log.exception(e, "diagnostics.scheduler.apply_error", {
                    "session_id": session.id,
                    "task_id": transition.task_id,
                })

    async def _apply(self, runtime: SessionRuntime, transition: TaskTransition):
        session = runtime.session
        state = session.task_states.get(transition.task_id)
        if state is None:
            log.warning("diagnostics.scheduler.unknown_transition",
                        session_id=session.id, task_id=transition.task_id)
            return
        if state.status.is_terminal:
            log.warning("diagnostics.scheduler.duplicate_terminal",
                        session_id=session.id, task_id=transition.task_id,
                        status=state.status.value, reported=transition.status.value)
            return
        if transition.status == TaskStatus.RUNNING and state.status != TaskStatus.PENDING:
            return

        state.apply(transition)
        session.refresh_status()
        log.debug("diagnostics.scheduler.task_transition",
                  session_id=session.id, task_id=state.task_id,
                  status=state.status.value, completed=session.completed,
                  total=session.total)

        if session.is_terminal:
            await self._finalize(runtime, transition_message(state))
        else:
            self.progress.publish(session, transition_message(state))

    async def _finalize(self, runtime: SessionRuntime, message: str):
        session = runtime.session
        session.completed_at = time.time()
        loop = asyncio.get_running_loop()
        try:
            try:
                session.system_info = await loop.run_in_executor(
                    None, self.system_info_provider, self.privilege.elevated
                )
            except Exception as e:
                log.exception(e, "diagnostics.scheduler.system_info_error", {
                    "session_id": session.id,
                })

            self.progress.publish(session, message)

            if session.status == SessionStatus.COMPLETED and self.materialize_on_complete:
                try:
                    path = await loop.run_in_executor(None, self.packager.materialize, session)
                    session.output_location = str(path)
                except OSError as e:
                    log.error("diagnostics.scheduler.materialize_failed",
                              session_id=session.id, error=str(e))
                except Exception as e:
                    log.exception(e, "diagnostics.scheduler.materialize_error", {
                        "session_id": session.id,
                    })
        finally:
            # Waiters and subscribers are released whatever happened above
            try:
                self.progress.close(session, terminal_message(session))
            finally:
                runtime.done.set()

        log.info("diagnostics.scheduler.session_finished",
                 session_id=session.id, status=session.status.value,
                 succeeded=len(session.states_with(TaskStatus.SUCCEEDED)),
                 failed=len(session.states_with(TaskStatus.FAILED)),
                 cancelled=len(session.states_with(TaskStatus.CANCELLED)),
                 output_path=session.output_location)

    async def _fail(self, runtime: SessionRuntime, error: str):
        """Scheduler-level failure before any task starts."""
        session = runtime.session
        session.scheduler_error = error
        runtime.cancel_signal.set()
        for state in session.task_states.values():
            if not state.status.is_terminal:
                state.apply(TaskTransition(state.task_id, TaskStatus.CANCELLED))
        session.refresh_status()
        log.error("diagnostics.scheduler.session_failed", session_id=session.id, error=error)
        await self._finalize(runtime, error)
