"""
Tests for run_diagnostics.py (CLI helpers).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import run_diagnostics
from diagnostics.errors import SessionNotFound
from diagnostics.models import SessionStatus


class TestCancelOnInterrupt:

    @pytest.mark.asyncio
    async def test_cancel_forwarded_to_service(self):
        service = MagicMock()
        service.cancel_session = AsyncMock(return_value=SessionStatus.RUNNING)

        await run_diagnostics.cancel_on_interrupt(service, "s1")

        service.cancel_session.assert_awaited_once_with("s1")

    @pytest.mark.asyncio
    async def test_cancel_error_is_logged(self):
        """A failing cancel is reported instead of vanishing with its task."""
        service = MagicMock()
        error = SessionNotFound("s1")
        service.cancel_session = AsyncMock(side_effect=error)

        with patch.object(run_diagnostics, "log") as log:
            await run_diagnostics.cancel_on_interrupt(service, "s1")

        log.exception.assert_called_once_with(
            error, "diagnostics.cli.cancel_error", {"session_id": "s1"}
        )
