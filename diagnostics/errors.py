"""
Error taxonomy for the diagnostic session orchestrator.

Creation-time and lookup errors derive from DiagnosticsError and are
raised to the caller. Per-task failures derive from TaskFailure and are
only ever captured inside a TaskState.
"""

from typing import Iterable, Optional


class DiagnosticsError(Exception):
    """Base class for errors surfaced to callers of the service."""

    code = "diagnostics_error"

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class InvalidSelection(DiagnosticsError):
    """Task selection is empty or lists the same task twice."""

    code = "invalid_selection"

    def __init__(self, message: str, task_ids: Iterable[str] = ()):
        super().__init__(message)
        self.task_ids = list(task_ids)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["task_ids"] = self.task_ids
        return data


class UnknownTaskIds(DiagnosticsError):
    """Session creation referenced ids absent from the catalog."""

    code = "unknown_task_ids"

    def __init__(self, task_ids: Iterable[str]):
        self.task_ids = list(task_ids)
        super().__init__(f"Unknown task ids: {', '.join(self.task_ids)}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["task_ids"] = self.task_ids
        return data


class ElevationRequired(DiagnosticsError):
    """Session creation referenced elevation-gated tasks while unelevated."""

    code = "elevation_required"

    def __init__(self, task_ids: Iterable[str]):
        self.task_ids = list(task_ids)
        super().__init__(
            f"Administrator privileges required for: {', '.join(self.task_ids)}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["task_ids"] = self.task_ids
        return data


class SessionNotFound(DiagnosticsError):
    """Operation referenced an unknown or evicted session id."""

    code = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionNotTerminal(DiagnosticsError):
    """Operation requires a session that has finished."""

    code = "session_not_terminal"

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is still {status}")


class TaskFailure(Exception):
    """A diagnostic task could not produce its output."""


class CommandNotFound(TaskFailure):
    """The external tool a task relies on is not installed."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"{command} could not be executed: command not found")


class CommandFailed(TaskFailure):
    """An external tool exited with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: Optional[str] = None):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr or ""
        message = f"{command} failed with exit code {returncode}"
        detail = self.stderr.strip()
        if detail:
            message = f"{message}: {detail[:500]}"
        super().__init__(message)


class CommandTimeout(TaskFailure):
    """An external tool ran longer than its per-command limit."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"{command} timed out after {timeout:g} seconds")
