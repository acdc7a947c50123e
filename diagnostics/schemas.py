"""Request and response models for the diagnostics HTTP API."""

from typing import Optional

from pydantic import BaseModel, Field

from .models import OutputFormat


class TaskInfo(BaseModel):
    """A catalog entry as shown to clients."""
    id: str
    name: str
    description: str
    category: str
    admin_required: bool
    available: bool = True  # False when elevation is required but missing


class TaskListResponse(BaseModel):
    tasks: list[TaskInfo]
    is_admin: bool


class CreateSessionRequest(BaseModel):
    """Request to run a selection of tasks."""
    selected_tasks: list[str] = Field(default_factory=list)
    output_format: Optional[OutputFormat] = None  # Service default when omitted


class CreateSessionResponse(BaseModel):
    session_id: str
    status: str
    total_tasks: int
    websocket_url: str


class TaskStateInfo(BaseModel):
    """Execution state of one selected task."""
    id: str
    name: str
    status: str
    error: Optional[str] = None
    artifacts: list[dict] = Field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None


class SessionStatusResponse(BaseModel):
    """Full status of a session."""
    id: str
    status: str
    progress: float
    completed_tasks: int
    total_tasks: int
    current_tasks: list[str]
    selected_tasks: list[str]
    output_format: str
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output_path: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
    scheduler_error: Optional[str] = None
    tasks: list[TaskStateInfo] = Field(default_factory=list)


class CancelResponse(BaseModel):
    session_id: str
    status: str


class SystemInfoResponse(BaseModel):
    """Host summary."""
    os_version: str
    computer_name: str
    username: str
    is_admin: bool
    cpu_info: str
    cpu_count: Optional[int] = None
    total_memory_gb: Optional[float] = None
    available_memory_gb: Optional[float] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    running: bool
    uptime_seconds: float
    elevated: bool
    tasks: int
    active_sessions: int
    sessions: dict[str, int] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: str
    code: str
    task_ids: Optional[list[str]] = None
