"""
Task execution harness.

A TaskExecutor runs one TaskDescriptor for a session and reports its
transitions over the session's reporting channel. The descriptor's
`execute` coroutine runs as its own asyncio task raced against the
session's cancel signal, so a cancel request interrupts it promptly and
any helper processes it spawned are terminated rather than abandoned.
"""

import asyncio
import sys
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from shared.logging import get_logger, correlation_context

from .errors import CommandFailed, CommandNotFound, CommandTimeout, TaskFailure
from .models import Artifact, TaskDescriptor, TaskStatus, TaskTransition
from .processes import ProcessRegistry

log = get_logger("diagnostics", "executor")

Reporter = Callable[[TaskTransition], Awaitable[None]]


class TaskContext:
    """
    What a task's `execute` coroutine gets to work with.

    Provides a scratch directory, a cancel check, a process-tracking
    command runner and a thread-pool runner for blocking reads.
    """

    def __init__(
        self,
        session_id: str,
        task_id: str,
        workdir: Path,
        cancel_signal: asyncio.Event,
        processes: ProcessRegistry,
    ):
        self.session_id = session_id
        self.task_id = task_id
        self._workdir = workdir
        self._cancel_signal = cancel_signal
        self._processes = processes

    @property
    def workdir(self) -> Path:
        """Per-task scratch directory, created on first use."""
        self._workdir.mkdir(parents=True, exist_ok=True)
        return self._workdir

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_signal.is_set()

    async def run_command(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> bytes:
        """
        Run an external command and return its stdout.

        The process is registered with the ProcessRegistry for the whole
        time it runs and is terminated if this coroutine is cancelled.

        Raises:
            CommandNotFound: executable missing
            CommandFailed: non-zero exit status (when check=True)
            CommandTimeout: ran longer than `timeout` seconds
        """
        command = str(argv[0])
        kwargs: dict[str, Any] = {}
        if sys.platform != "win32":
            kwargs["start_new_session"] = True

        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(a) for a in argv],
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except FileNotFoundError:
            raise CommandNotFound(command) from None
        except PermissionError as e:
            raise TaskFailure(f"{command} could not be executed: {e}") from e

        tracked = self._processes.register(
            self.session_id, self.task_id, proc,
            process_group=sys.platform != "win32",
        )
        try:
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                raise CommandTimeout(command, timeout) from None
        finally:
            if proc.returncode is None:
                await self._processes.terminate_process(tracked)
            self._processes.unregister(tracked)

        if check and proc.returncode != 0:
            raise CommandFailed(
                command, proc.returncode,
                stderr.decode("utf-8", errors="replace") if stderr else None,
            )
        return stdout

    async def run_blocking(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a synchronous function in the default thread pool."""
        loop = asyncio.get_running_loop()
        if kwargs:
            func = partial(func, **kwargs)
        return await loop.run_in_executor(None, func, *args)

    async def read_artifact(self, path: Path, name: str, media_type: str = "text/plain") -> Artifact:
        """Load a file a tool wrote into the work directory."""
        if not path.exists():
            raise TaskFailure(f"{path.name} was not produced")
        data = await self.run_blocking(path.read_bytes)
        return Artifact(name=name, data=data, media_type=media_type)


def normalize_output(task_id: str, result: Any) -> tuple[Artifact, ...]:
    """Coerce whatever `execute` returned into a tuple of artifacts."""
    if result is None:
        return ()
    if isinstance(result, Artifact):
        return (result,)
    if isinstance(result, str):
        return (Artifact(f"{task_id}.txt", result.encode("utf-8")),)
    if isinstance(result, (bytes, bytearray)):
        return (Artifact(f"{task_id}.bin", bytes(result), "application/octet-stream"),)
    artifacts = tuple(result)
    for item in artifacts:
        if not isinstance(item, Artifact):
            raise TypeError(f"Task {task_id} returned {type(item).__name__}, expected Artifact")
    return artifacts


def describe_error(error: BaseException) -> str:
    """Message stored in TaskState.error."""
    if isinstance(error, TaskFailure):
        return str(error)
    message = str(error)
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"


class TaskExecutor:
    """
    Runs task descriptors, one call per task.

    Every call reports exactly one terminal transition (succeeded, failed
    or cancelled) no matter how the underlying work ends.
    """

    def __init__(self, processes: ProcessRegistry, work_root: Path):
        self.processes = processes
        self.work_root = Path(work_root)

    def make_context(self, session_id: str, descriptor: TaskDescriptor,
                     cancel_signal: asyncio.Event) -> TaskContext:
        return TaskContext(
            session_id=session_id,
            task_id=descriptor.id,
            workdir=self.work_root / session_id / descriptor.id,
            cancel_signal=cancel_signal,
            processes=self.processes,
        )

    async def run(
        self,
        descriptor: TaskDescriptor,
        cancel_signal: asyncio.Event,
        session_id: str,
        report: Reporter,
    ) -> TaskTransition:
        """
        Execute one task and return its terminal transition.

        Args:
            descriptor: Task to run
            cancel_signal: Session-scoped cancellation event
            session_id: Owning session
            report: Coroutine delivering transitions to the scheduler
        """
        with correlation_context(session_id=session_id, task_id=descriptor.id):
            if cancel_signal.is_set():
                outcome = TaskTransition(descriptor.id, TaskStatus.CANCELLED)
                log.info("diagnostics.executor.skipped_cancelled", task_id=descriptor.id)
                await report(outcome)
                return outcome

            await report(TaskTransition(descriptor.id, TaskStatus.RUNNING))
            start_time = log.task_start(descriptor.id, name=descriptor.display_name)

            outcome = await self._execute(descriptor, cancel_signal, session_id, start_time)
            await report(outcome)
            return outcome

    async def _execute(
        self,
        descriptor: TaskDescriptor,
        cancel_signal: asyncio.Event,
        session_id: str,
        start_time: float,
    ) -> TaskTransition:
        context = self.make_context(session_id, descriptor, cancel_signal)
        job = asyncio.create_task(descriptor.execute(context))
        waiter = asyncio.create_task(cancel_signal.wait())

        try:
            await asyncio.wait({job, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # Our own worker is being torn down: take the task with us
            waiter.cancel()
            await self._interrupt(job, session_id, descriptor.id)
            raise

        if not job.done():
            await self._interrupt(job, session_id, descriptor.id)
            log.info("diagnostics.executor.task_cancelled", task_id=descriptor.id)
            return TaskTransition(descriptor.id, TaskStatus.CANCELLED)

        waiter.cancel()

        error = job.exception() if not job.cancelled() else asyncio.CancelledError()
        if error is not None and cancel_signal.is_set():
            # Helpers killed by the cancel request surface as command failures
            log.info("diagnostics.executor.task_cancelled",
                     task_id=descriptor.id, error=describe_error(error))
            return TaskTransition(descriptor.id, TaskStatus.CANCELLED)
        if error is not None:
            message = describe_error(error)
            log.task_error(descriptor.id, message, type(error).__name__, start_time)
            return TaskTransition(descriptor.id, TaskStatus.FAILED, error=message)

        try:
            output = normalize_output(descriptor.id, job.result())
        except TypeError as e:
            log.task_error(descriptor.id, str(e), "TypeError", start_time)
            return TaskTransition(descriptor.id, TaskStatus.FAILED, error=str(e))

        log.task_complete(
            descriptor.id, start_time,
            artifacts=len(output),
            size_bytes=sum(a.size for a in output),
        )
        return TaskTransition(descriptor.id, TaskStatus.SUCCEEDED, output=output)

    async def _interrupt(self, job: asyncio.Task, session_id: str, task_id: str):
        """Kill the task's helpers, then cancel its coroutine."""
        await self.processes.terminate(session_id, task_id)
        job.cancel()
        try:
            await job
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("diagnostics.executor.error_after_cancel",
                      task_id=task_id, error=describe_error(e))
