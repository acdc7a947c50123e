"""
Correlation context management for session tracing.

Uses ContextVar for async-safe context propagation: every asyncio task
copies the context it was created in, so executors spawned inside a
session context keep that session's IDs.
"""

import uuid
from contextvars import ContextVar
from contextlib import contextmanager
from typing import Optional, Generator

# Context variables (async-safe)
_correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')
_session_id: ContextVar[str] = ContextVar('session_id', default='')
_task_id: ContextVar[str] = ContextVar('task_id', default='')


def get_correlation_id() -> str:
    """Get current correlation ID, generating one if none exists."""
    cid = _correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())
        _correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for current context."""
    _correlation_id.set(cid)


def get_session_id() -> Optional[str]:
    """Get current diagnostic session ID."""
    return _session_id.get() or None


def set_session_id(sid: str) -> None:
    """Set diagnostic session ID for current context."""
    _session_id.set(sid)


def get_task_id() -> Optional[str]:
    """Get current diagnostic task ID."""
    return _task_id.get() or None


def set_task_id(tid: str) -> None:
    """Set diagnostic task ID for current context."""
    _task_id.set(tid)


@contextmanager
def correlation_context(
    correlation_id: Optional[str] = None,
    session_id: Optional[str] = None,
    task_id: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Context manager for setting correlation context.

    Args:
        correlation_id: Optional correlation ID (generated if not provided)
        session_id: Optional diagnostic session ID
        task_id: Optional diagnostic task ID

    Yields:
        The correlation ID being used

    Example:
        with correlation_context(session_id=sid) as cid:
            log.info("diagnostics.session.started", correlation_id=cid)
    """
    old_cid = _correlation_id.get()
    old_sid = _session_id.get()
    old_tid = _task_id.get()

    try:
        if correlation_id:
            _correlation_id.set(correlation_id)
        elif not old_cid:
            _correlation_id.set(str(uuid.uuid4()))

        if session_id:
            _session_id.set(session_id)

        if task_id:
            _task_id.set(task_id)

        yield get_correlation_id()
    finally:
        _correlation_id.set(old_cid)
        _session_id.set(old_sid)
        _task_id.set(old_tid)
