"""
hostdiag diagnostics - session orchestration for host inspection tasks.

This package implements:
- A static catalog of inspection tasks, some gated on elevation
- Sessions driven through pending -> running -> completed/cancelled/failed
- Bounded concurrent task execution with prompt, process-killing cancellation
- Pull and push progress reporting
- Deterministic JSON / ZIP packaging of results
"""

from .models import (
    Artifact,
    OutputFormat,
    ProgressSnapshot,
    Session,
    SessionStatus,
    TaskCategory,
    TaskDescriptor,
    TaskState,
    TaskStatus,
    TaskTransition,
)
from .errors import (
    CommandFailed,
    CommandNotFound,
    CommandTimeout,
    DiagnosticsError,
    ElevationRequired,
    InvalidSelection,
    SessionNotFound,
    SessionNotTerminal,
    TaskFailure,
    UnknownTaskIds,
)
from .catalog import TaskCatalog
from .privilege import PrivilegeContext, is_running_as_admin
from .processes import ProcessRegistry, TrackedProcess
from .executor import TaskContext, TaskExecutor
from .cancellation import CancellationController
from .store import SessionStore
from .progress import ProgressAggregator
from .packager import PackagedOutput, ResultPackager
from .scheduler import SessionScheduler
from .config import ApiConfig, ServiceConfig, load_config
from .service import DiagnosticService
from .tasks import default_catalog

__all__ = [
    # Models
    "Artifact",
    "OutputFormat",
    "ProgressSnapshot",
    "Session",
    "SessionStatus",
    "TaskCategory",
    "TaskDescriptor",
    "TaskState",
    "TaskStatus",
    "TaskTransition",
    # Errors
    "CommandFailed",
    "CommandNotFound",
    "CommandTimeout",
    "DiagnosticsError",
    "ElevationRequired",
    "InvalidSelection",
    "SessionNotFound",
    "SessionNotTerminal",
    "TaskFailure",
    "UnknownTaskIds",
    # Components
    "TaskCatalog",
    "PrivilegeContext",
    "is_running_as_admin",
    "ProcessRegistry",
    "TrackedProcess",
    "TaskContext",
    "TaskExecutor",
    "CancellationController",
    "SessionStore",
    "ProgressAggregator",
    "PackagedOutput",
    "ResultPackager",
    "SessionScheduler",
    # Service
    "ApiConfig",
    "ServiceConfig",
    "load_config",
    "DiagnosticService",
    "default_catalog",
]
