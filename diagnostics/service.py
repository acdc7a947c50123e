"""
Diagnostic service entry point.

Ties together all orchestrator components:
- TaskCatalog: Static registry of inspection tasks
- PrivilegeContext: Elevation of the current process
- SessionScheduler: Session state machine and worker pool
- ProgressAggregator: Pull snapshots and push subscriptions
- CancellationController / ProcessRegistry: Cancel signals and helper cleanup
- ResultPackager: JSON report and ZIP bundles
"""

import asyncio
import time
from typing import AsyncIterator, Iterable, Optional, Union

from shared.logging import get_logger

from .cancellation import CancellationController
from .catalog import TaskCatalog
from .config import ServiceConfig
from .executor import TaskExecutor
from .models import OutputFormat, ProgressSnapshot, Session, SessionStatus
from .packager import PackagedOutput, ResultPackager
from .privilege import PrivilegeContext
from .processes import ProcessRegistry
from .progress import ProgressAggregator
from .scheduler import SessionScheduler
from .store import SessionStore
from .system_info import collect_system_info

log = get_logger("diagnostics", "service")


class DiagnosticService:
    """
    Facade used by the HTTP API and the CLI.

    Provides:
    - Task listing with availability under the current privilege
    - Session creation, status, cancellation and removal
    - Result packaging and progress subscriptions
    - Periodic eviction of expired sessions
    """

    def __init__(
        self,
        catalog: Optional[TaskCatalog] = None,
        config: Optional[ServiceConfig] = None,
        privilege: Optional[PrivilegeContext] = None,
    ):
        self.config = config or ServiceConfig()
        if catalog is None:
            from .tasks import default_catalog
            catalog = default_catalog()
        self.catalog = catalog
        self.privilege = privilege or PrivilegeContext.resolve(self.config.elevated)

        # Initialize components
        self.store = SessionStore()
        self.processes = ProcessRegistry(grace_seconds=self.config.termination_grace_seconds)
        self.cancellation = CancellationController(self.processes)
        self.progress = ProgressAggregator(self.store)
        self.packager = ResultPackager(self.store, self.catalog, self.config.output_dir)
        self.executor = TaskExecutor(self.processes, self.config.work_dir)

        self.scheduler = SessionScheduler(
            catalog=self.catalog,
            store=self.store,
            progress=self.progress,
            packager=self.packager,
            cancellation=self.cancellation,
            executor=self.executor,
            privilege=self.privilege,
            max_workers=self.config.max_workers,
            retention_seconds=self.config.retention_seconds,
            default_output_format=self.config.default_output_format,
            materialize_on_complete=self.config.materialize_on_complete,
        )

        self._eviction_task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self._running = False

    async def start(self):
        """Start background maintenance."""
        if self._running:
            return

        log.info("diagnostics.service.starting",
                 tasks=len(self.catalog),
                 elevated=self.privilege.elevated,
                 max_workers=self.config.max_workers)

        self._eviction_task = asyncio.create_task(self._eviction_loop())
        self._started_at = time.time()
        self._running = True

        log.info("diagnostics.service.started")

    async def stop(self):
        """Cancel unfinished sessions and stop background maintenance."""
        if not self._running:
            return

        log.info("diagnostics.service.stopping")
        self._running = False

        if self._eviction_task:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None

        await self.scheduler.shutdown()

        log.info("diagnostics.service.stopped")

    async def _eviction_loop(self):
        """Periodically drop sessions past the retention window."""
        while self._running:
            try:
                await asyncio.sleep(self.config.eviction_interval)
                self.scheduler.evict_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "diagnostics.service.eviction_error", {})

    # ==================== Public API ====================

    def list_tasks(self) -> list[dict]:
        """Catalog entries, flagged unavailable when they need elevation we lack."""
        return [
            {
                **descriptor.to_dict(),
                "available": self.privilege.elevated or not descriptor.requires_elevation,
            }
            for descriptor in self.catalog.list_tasks()
        ]

    async def create_session(
        self,
        selected_task_ids: Iterable[str],
        output_format: Union[OutputFormat, str, None] = None,
    ) -> Session:
        """
        Create a session and start running it.

        Raises:
            InvalidSelection, UnknownTaskIds, ElevationRequired
        """
        session = self.scheduler.create(selected_task_ids, output_format=output_format)
        await self.scheduler.start(session.id)
        return session

    def get_session(self, session_id: str) -> Session:
        return self.scheduler.get(session_id)

    def get_session_status(self, session_id: str) -> dict:
        return self.scheduler.get(session_id).to_dict()

    def get_progress(self, session_id: str) -> ProgressSnapshot:
        return self.progress.snapshot(session_id)

    async def cancel_session(self, session_id: str) -> SessionStatus:
        return await self.scheduler.cancel(session_id)

    async def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> Session:
        return await self.scheduler.wait(session_id, timeout=timeout)

    def fetch_results(
        self,
        session_id: str,
        format: Union[OutputFormat, str, None] = None,
    ) -> PackagedOutput:
        """
        Package a terminal session.

        Raises:
            SessionNotFound, SessionNotTerminal
        """
        return self.packager.package(session_id, format)

    def subscribe(self, session_id: str) -> AsyncIterator[ProgressSnapshot]:
        return self.progress.subscribe(session_id)

    def remove_session(self, session_id: str) -> Session:
        return self.scheduler.remove(session_id)

    def get_system_info(self) -> dict:
        return collect_system_info(self.privilege.elevated)

    def get_status(self) -> dict:
        """Service health summary."""
        return {
            "running": self._running,
            "uptime_seconds": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
            "elevated": self.privilege.elevated,
            "tasks": len(self.catalog),
            "active_sessions": self.scheduler.active_sessions(),
            "sessions": self.store.count_by_status(),
        }
