"""
Structured logging for hostdiag.

Provides JSON Lines logging with correlation IDs so that every event
emitted while a diagnostic session runs can be traced back to it.

Usage:
    from shared.logging import get_logger, correlation_context

    log = get_logger("diagnostics", "executor")

    with correlation_context(session_id=session.id):
        log.info("diagnostics.executor.task_started",
                 task_id="dxdiag")
"""

from .logger import get_logger, DiagLogger, set_log_dir
from .context import (
    correlation_context,
    get_correlation_id,
    set_correlation_id,
    get_session_id,
    set_session_id,
    get_task_id,
    set_task_id,
)

__all__ = [
    "get_logger",
    "DiagLogger",
    "set_log_dir",
    "correlation_context",
    "get_correlation_id",
    "set_correlation_id",
    "get_session_id",
    "set_session_id",
    "get_task_id",
    "set_task_id",
]
