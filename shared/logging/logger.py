"""
DiagLogger - Structured logging for hostdiag components.
"""

import logging
import os
import time
import traceback
from pathlib import Path
from typing import Any, Optional
from logging.handlers import RotatingFileHandler

from .formatters import JsonLinesFormatter, ConsoleFormatter
from .context import set_task_id

# Cache of loggers by module.component
_loggers: dict[str, "DiagLogger"] = {}

# Log directory (resolved lazily)
_log_dir: Optional[Path] = None

LOG_DIR_ENV = "HOSTDIAG_LOG_DIR"


def set_log_dir(path: Path) -> None:
    """Override the log directory for loggers created afterwards."""
    global _log_dir
    _log_dir = Path(path)
    _log_dir.mkdir(parents=True, exist_ok=True)


def _get_log_dir() -> Path:
    """Get or create log directory."""
    global _log_dir
    if _log_dir is None:
        env_dir = os.environ.get(LOG_DIR_ENV)
        if env_dir:
            _log_dir = Path(env_dir)
        else:
            # Project root is the directory holding shared/
            current = Path(__file__).resolve()
            for parent in current.parents:
                if (parent / "shared").exists():
                    _log_dir = parent / "logs"
                    break
            else:
                _log_dir = Path("logs")

        _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def get_logger(module: str, component: str, console: bool = True) -> "DiagLogger":
    """
    Get or create a DiagLogger for a module/component.

    Args:
        module: Module name (diagnostics, api, cli)
        component: Component within module (scheduler, executor, etc.)
        console: Whether to also output to console

    Returns:
        DiagLogger instance
    """
    key = f"{module}.{component}"
    if key not in _loggers:
        _loggers[key] = DiagLogger(module, component, console)
    return _loggers[key]


class DiagLogger:
    """
    Structured logger for hostdiag components.

    Outputs JSON Lines to file and optionally human-readable to console.
    All events include the correlation ID and, inside a session context,
    the session ID.
    """

    def __init__(self, module: str, component: str, console: bool = True):
        self.module = module
        self.component = component
        self._logger = logging.getLogger(f"hostdiag.{module}.{component}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        self._logger.handlers.clear()

        log_dir = _get_log_dir()
        log_file = log_dir / f"{module}.jsonl"

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=10,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLinesFormatter())
        self._logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(ConsoleFormatter())
            self._logger.addHandler(console_handler)

    def event(
        self,
        event_type: str,
        level: str = "INFO",
        **data: Any,
    ) -> None:
        """
        Log a structured event.

        Args:
            event_type: Event type identifier (e.g., "diagnostics.scheduler.session_created")
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            **data: Event-specific data fields
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        event_data = {
            "event_type": event_type,
            "diag_module": self.module,
            "component": self.component,
            **data,
        }

        self._logger.log(
            log_level,
            event_type,
            extra={
                "event_type": event_type,
                "diag_module": self.module,
                "component": self.component,
                "event_data": event_data,
                "event_fields": data,
            },
        )

    def debug(self, event_type: str, **data: Any) -> None:
        """Log a DEBUG level event."""
        self.event(event_type, level="DEBUG", **data)

    def info(self, event_type: str, **data: Any) -> None:
        """Log an INFO level event."""
        self.event(event_type, level="INFO", **data)

    def warning(self, event_type: str, **data: Any) -> None:
        """Log a WARNING level event."""
        self.event(event_type, level="WARNING", **data)

    def error(self, event_type: str, **data: Any) -> None:
        """Log an ERROR level event."""
        self.event(event_type, level="ERROR", **data)

    def exception(
        self,
        error: BaseException,
        event_type: str = "error",
        context: Optional[dict] = None,
    ) -> None:
        """
        Log an exception with full stack trace.

        Args:
            error: The exception to log
            event_type: Event type (default: "error")
            context: Additional context about what was happening
        """
        self.event(
            event_type,
            level="ERROR",
            error_class=type(error).__name__,
            error_message=str(error),
            stack_trace=traceback.format_exc(),
            context=context or {},
        )

    # Convenience methods for task lifecycles

    def task_start(
        self,
        task_id: str,
        **kwargs: Any,
    ) -> float:
        """
        Log task start and return start time for duration calculation.

        Args:
            task_id: Diagnostic task identifier
            **kwargs: Additional fields

        Returns:
            Start time (for duration calculation)
        """
        set_task_id(task_id)
        self.event(
            f"{self.module}.task.start",
            action="started",
            task_id=task_id,
            **kwargs,
        )
        return time.time()

    def task_complete(
        self,
        task_id: str,
        start_time: float,
        artifacts: int = 0,
        size_bytes: int = 0,
        **kwargs: Any,
    ) -> None:
        """
        Log task completion with duration.

        Args:
            task_id: Diagnostic task identifier
            start_time: Time from task_start()
            artifacts: Number of artifacts captured
            size_bytes: Total captured size
            **kwargs: Additional fields
        """
        duration_ms = (time.time() - start_time) * 1000
        self.event(
            f"{self.module}.task.complete",
            action="completed",
            task_id=task_id,
            artifacts=artifacts,
            size_bytes=size_bytes,
            duration_ms=round(duration_ms, 2),
            **kwargs,
        )

    def task_error(
        self,
        task_id: str,
        error: str,
        error_type: str,
        start_time: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        """
        Log task failure.

        Args:
            task_id: Diagnostic task identifier
            error: Error message
            error_type: Error type/category
            start_time: Optional start time for duration
            **kwargs: Additional fields
        """
        event_data = {
            "action": "failed",
            "task_id": task_id,
            "error": error,
            "error_type": error_type,
            **kwargs,
        }
        if start_time:
            event_data["duration_ms"] = round((time.time() - start_time) * 1000, 2)

        self.event(f"{self.module}.task.error", level="ERROR", **event_data)
