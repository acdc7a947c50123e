"""
Data models for the diagnostic session orchestrator.

TaskDescriptor is immutable and shared by every session. Session and
TaskState are owned by the SessionScheduler and only change when it
applies a TaskTransition reported by an executor or a cancel request.
"""

import hashlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .executor import TaskContext


class TaskCategory(str, Enum):
    """Catalog grouping shown to users."""
    SYSTEM = "System"
    HARDWARE = "Hardware"
    NETWORK = "Network"
    STORAGE = "Storage"
    SERVICES = "Services"
    LOGS = "Logs"
    DRIVERS = "Drivers"
    OTHER = "Other"


class TaskStatus(str, Enum):
    """Per-task lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class SessionStatus(str, Enum):
    """Session lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.FAILED)


class OutputFormat(str, Enum):
    """Packaging formats."""
    JSON = "json"
    ZIP = "zip"
    BOTH = "both"


def format_timestamp(ts: Optional[float]) -> Optional[str]:
    """Render an epoch timestamp as ISO 8601 UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


@dataclass(frozen=True)
class TaskDescriptor:
    """
    One diagnostic inspection unit.

    `execute` receives a TaskContext and returns the captured payload:
    an Artifact, a sequence of Artifacts, or raw str/bytes.
    """
    id: str
    display_name: str
    description: str
    category: TaskCategory
    requires_elevation: bool
    execute: Callable[["TaskContext"], Awaitable[Any]] = field(compare=False, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.display_name,
            "description": self.description,
            "category": self.category.value,
            "admin_required": self.requires_elevation,
        }


@dataclass(frozen=True)
class Artifact:
    """A single captured file produced by a task."""
    name: str
    data: bytes
    media_type: str = "text/plain"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @property
    def is_text(self) -> bool:
        return self.media_type.startswith("text/")

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    def to_dict(self, include_text: bool = False) -> dict:
        data = {
            "name": self.name,
            "media_type": self.media_type,
            "size": self.size,
            "sha256": self.sha256,
        }
        if include_text and self.is_text:
            data["text"] = self.text()
        return data


@dataclass(frozen=True)
class TaskTransition:
    """
    A state change reported by the executor that owns a task.

    Executors never touch TaskState directly; they send transitions over
    the session's reporting channel and the scheduler applies them.
    """
    task_id: str
    status: TaskStatus
    output: Optional[tuple[Artifact, ...]] = None
    error: Optional[str] = None
    at: float = field(default_factory=time.time)


@dataclass
class TaskState:
    """Execution state of one selected task within a session."""
    task_id: str
    display_name: str
    status: TaskStatus = TaskStatus.PENDING
    output: Optional[tuple[Artifact, ...]] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int(round((self.finished_at - self.started_at) * 1000))

    def apply(self, transition: TaskTransition):
        """Apply a reported transition."""
        self.status = transition.status
        if transition.status == TaskStatus.RUNNING:
            self.started_at = transition.at
            return

        self.finished_at = transition.at
        if transition.status == TaskStatus.SUCCEEDED:
            self.output = transition.output or ()
        elif transition.status == TaskStatus.FAILED:
            self.error = transition.error or "Unknown error"

    def to_dict(self) -> dict:
        return {
            "id": self.task_id,
            "name": self.display_name,
            "status": self.status.value,
            "error": self.error,
            "artifacts": [a.to_dict() for a in self.output or ()],
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "duration_ms": self.duration_ms,
        }


@dataclass
class Session:
    """
    One user-initiated run of a selected subset of tasks.

    `status` is always recomputed from the task states (plus the
    started/scheduler_error flags) through refresh_status().
    """
    id: str
    selected_task_ids: tuple[str, ...]
    task_states: dict[str, TaskState]
    output_format: OutputFormat = OutputFormat.BOTH
    status: SessionStatus = SessionStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    output_location: Optional[str] = None
    cancel_requested: bool = False
    scheduler_error: Optional[str] = None
    system_info: Optional[dict] = None

    @property
    def total(self) -> int:
        return len(self.task_states)

    @property
    def completed(self) -> int:
        return sum(1 for s in self.task_states.values() if s.status.is_terminal)

    @property
    def progress(self) -> float:
        if not self.task_states:
            return 1.0 if self.status.is_terminal else 0.0
        return self.completed / self.total

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def compute_status(self) -> SessionStatus:
        """Derive session status from the multiset of task statuses."""
        if self.scheduler_error:
            return SessionStatus.FAILED

        statuses = [s.status for s in self.task_states.values()]
        if statuses and all(s.is_terminal for s in statuses):
            if TaskStatus.CANCELLED in statuses:
                return SessionStatus.CANCELLED
            return SessionStatus.COMPLETED

        if self.started_at is not None:
            return SessionStatus.RUNNING
        return SessionStatus.PENDING

    def refresh_status(self) -> SessionStatus:
        self.status = self.compute_status()
        return self.status

    def states_with(self, status: TaskStatus) -> list[TaskState]:
        return [s for s in self.task_states.values() if s.status == status]

    def errors(self) -> list[str]:
        return [f"{s.display_name}: {s.error}" for s in self.states_with(TaskStatus.FAILED)]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "completed_tasks": self.completed,
            "total_tasks": self.total,
            "current_tasks": [s.display_name for s in self.states_with(TaskStatus.RUNNING)],
            "selected_tasks": list(self.selected_task_ids),
            "output_format": self.output_format.value,
            "created_at": format_timestamp(self.created_at),
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "output_path": self.output_location,
            "errors": self.errors(),
            "scheduler_error": self.scheduler_error,
            "tasks": [s.to_dict() for s in self.task_states.values()],
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time progress view derived from a Session."""
    session_id: str
    status: SessionStatus
    progress: float
    completed: int
    total: int
    current_tasks: tuple[str, ...]
    errors: tuple[str, ...]
    output_location: Optional[str] = None
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_session(cls, session: Session, message: str = "") -> "ProgressSnapshot":
        return cls(
            session_id=session.id,
            status=session.status,
            progress=session.progress,
            completed=session.completed,
            total=session.total,
            current_tasks=tuple(s.display_name for s in session.states_with(TaskStatus.RUNNING)),
            errors=tuple(session.errors()),
            output_location=session.output_location,
            message=message,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "progress": self.progress,
            "completed_tasks": self.completed,
            "total_tasks": self.total,
            "current_tasks": list(self.current_tasks),
            "errors": list(self.errors),
            "output_path": self.output_location,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }
