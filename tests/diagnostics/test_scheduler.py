"""
Tests for diagnostics/scheduler.py
"""

import asyncio
import io
import zipfile
from unittest.mock import patch

import pytest

from diagnostics.catalog import TaskCatalog
from diagnostics.errors import (
    ElevationRequired,
    InvalidSelection,
    SessionNotFound,
    SessionNotTerminal,
    UnknownTaskIds,
)
from diagnostics.models import OutputFormat, SessionStatus, TaskStatus
from diagnostics.packager import ResultPackager
from diagnostics.privilege import PrivilegeContext

from fakes import Gate, Recorder, make_descriptor, wait_until


async def collect(updates) -> list:
    return [snapshot async for snapshot in updates]


class TestCreate:
    """Tests for session creation and validation."""

    def test_creates_pending_session(self, service):
        """A valid selection yields a pending session with pending task states."""
        session = service.scheduler.create(["beta", "alpha"])

        assert session.status == SessionStatus.PENDING
        assert session.selected_task_ids == ("beta", "alpha")
        assert list(session.task_states) == ["beta", "alpha"]
        assert all(s.status == TaskStatus.PENDING for s in session.task_states.values())
        assert session.output_format == OutputFormat.BOTH
        assert service.store.get(session.id) is session

    def test_output_format_override(self, service):
        session = service.scheduler.create(["alpha"], output_format="json")
        assert session.output_format == OutputFormat.JSON

    def test_unknown_ids_rejected(self, service):
        """Every unknown id is reported and no session is stored."""
        with pytest.raises(UnknownTaskIds) as exc_info:
            service.scheduler.create(["alpha", "nope", "gone"])

        assert exc_info.value.task_ids == ["nope", "gone"]
        assert len(service.store) == 0

    def test_elevation_required_when_unelevated(self, service):
        with pytest.raises(ElevationRequired) as exc_info:
            service.scheduler.create(["alpha", "admin_only"])

        assert exc_info.value.task_ids == ["admin_only"]
        assert len(service.store) == 0

    def test_elevated_privilege_allows_gated_tasks(self, service):
        session = service.scheduler.create(
            ["admin_only"], privilege=PrivilegeContext(elevated=True)
        )
        assert session.status == SessionStatus.PENDING

    def test_empty_selection_rejected(self, service):
        with pytest.raises(InvalidSelection):
            service.scheduler.create([])
        assert len(service.store) == 0

    def test_duplicate_selection_rejected(self, service):
        with pytest.raises(InvalidSelection) as exc_info:
            service.scheduler.create(["alpha", "beta", "alpha"])
        assert exc_info.value.task_ids == ["alpha"]
        assert len(service.store) == 0


class TestRun:
    """Tests for running sessions to completion."""

    @pytest.mark.asyncio
    async def test_all_tasks_succeed(self, service):
        """Session completes and writes its bundle."""
        session = await service.create_session(["alpha", "beta", "gamma"])
        session = await service.wait_for_session(session.id, timeout=10)

        assert session.status == SessionStatus.COMPLETED
        assert session.progress == 1.0
        assert session.started_at is not None
        assert session.completed_at >= session.started_at
        for state in session.task_states.values():
            assert state.status == TaskStatus.SUCCEEDED
            assert state.output[0].name == f"{state.task_id}.txt"
            assert state.started_at is not None
            assert state.finished_at >= state.started_at

        assert session.output_location is not None
        assert session.output_location.endswith(f"hostdiag_{session.id}.zip")
        with zipfile.ZipFile(session.output_location) as archive:
            assert "alpha/alpha.txt" in archive.namelist()

    @pytest.mark.asyncio
    async def test_one_failure_still_completes(self, service):
        """A failing task is recorded but does not fail the session."""
        session = await service.create_session(["alpha", "broken", "beta"])
        session = await service.wait_for_session(session.id, timeout=10)

        assert session.status == SessionStatus.COMPLETED
        broken = session.task_states["broken"]
        assert broken.status == TaskStatus.FAILED
        assert broken.error == "tool exploded"
        assert session.errors() == ["Broken: tool exploded"]
        assert session.task_states["alpha"].status == TaskStatus.SUCCEEDED
        assert session.task_states["beta"].status == TaskStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_fifo_admission_with_single_worker(self, make_service):
        """With one worker, tasks start in selection order."""
        recorder = Recorder(delay=0)
        catalog = TaskCatalog([make_descriptor(name, recorder) for name in "edcba"])
        service = make_service(catalog_override=catalog, max_workers=1)

        session = await service.create_session(["c", "a", "e", "b", "d"])
        await service.wait_for_session(session.id, timeout=10)

        assert recorder.order == ["c", "a", "e", "b", "d"]

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(self, make_service):
        """No more than max_workers tasks run at once."""
        recorder = Recorder(delay=0.05)
        catalog = TaskCatalog([make_descriptor(f"t{i}", recorder) for i in range(6)])
        service = make_service(catalog_override=catalog, max_workers=2)

        session = await service.create_session([f"t{i}" for i in range(6)])
        session = await service.wait_for_session(session.id, timeout=10)

        assert session.status == SessionStatus.COMPLETED
        assert recorder.peak == 2

    @pytest.mark.asyncio
    async def test_work_dir_failure_fails_session(self, make_service, temp_dir):
        """A scheduler-level error marks the session failed without running tasks."""
        blocker = temp_dir / "not_a_dir"
        blocker.write_text("x")
        service = make_service(work_dir=blocker)

        session = await service.create_session(["alpha", "beta"])

        assert session.status == SessionStatus.FAILED
        assert "work directory" in session.scheduler_error
        assert all(s.status == TaskStatus.CANCELLED for s in session.task_states.values())
        assert session.output_location is None

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, service):
        """Subscribers see one snapshot per transition plus a final one."""
        session = await service.create_session(["alpha", "broken", "beta"])
        snapshots = [s async for s in service.subscribe(session.id)]

        completed = [s.completed for s in snapshots]
        assert completed == sorted(completed)
        assert all(s.total == 3 for s in snapshots)
        # running + terminal per task, then the closing snapshot
        assert len(snapshots) == 7
        assert snapshots[-1].is_terminal
        assert snapshots[-1].status == SessionStatus.COMPLETED
        assert snapshots[-1].output_location is not None

    @pytest.mark.asyncio
    async def test_packaging_error_still_settles_session(self, service):
        """A bundle that cannot be built does not leave waiters hanging."""
        with patch.object(service.packager, "materialize", side_effect=ValueError("zip boom")):
            session = await service.create_session(["alpha"])
            stream = asyncio.create_task(collect(service.subscribe(session.id)))
            session = await service.wait_for_session(session.id, timeout=5)
            snapshots = await asyncio.wait_for(stream, timeout=5)

        assert session.status == SessionStatus.COMPLETED
        assert session.output_location is None
        assert snapshots[-1].is_terminal

        service.remove_session(session.id)
        with pytest.raises(SessionNotFound):
            service.get_session(session.id)

    @pytest.mark.asyncio
    async def test_system_info_error_still_packages(self, service):
        def unavailable_host_info(elevated):
            raise RuntimeError("wmi unavailable")

        service.scheduler.system_info_provider = unavailable_host_info
        session = await service.create_session(["alpha"])
        session = await service.wait_for_session(session.id, timeout=5)

        assert session.status == SessionStatus.COMPLETED
        assert session.system_info is None
        assert session.output_location is not None


class TestCancel:
    """Tests for session cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_mid_run_keeps_finished_output(self, make_service, gate):
        """Tasks finished before the cancel keep their output, the rest are cancelled."""
        service = make_service(max_workers=1)
        session = await service.create_session(
            ["alpha", "beta", "blocking", "gamma", "delta"]
        )
        await wait_until(gate.started.is_set)

        status = await service.cancel_session(session.id)
        session = await service.wait_for_session(session.id, timeout=10)

        assert status in (SessionStatus.RUNNING, SessionStatus.CANCELLED)
        assert session.status == SessionStatus.CANCELLED
        assert gate.cancelled is True
        states = session.task_states
        assert states["alpha"].status == TaskStatus.SUCCEEDED
        assert states["beta"].status == TaskStatus.SUCCEEDED
        for task_id in ("blocking", "gamma", "delta"):
            assert states[task_id].status == TaskStatus.CANCELLED
            assert states[task_id].output is None
        assert session.output_location is None

        bundle = service.fetch_results(session.id, OutputFormat.ZIP)
        with zipfile.ZipFile(io.BytesIO(bundle.content)) as archive:
            assert sorted(archive.namelist()) == ["alpha/alpha.txt", "beta/beta.txt"]

    @pytest.mark.asyncio
    async def test_cancel_interrupts_every_running_task(self, make_service, catalog):
        """Several executors in flight are all interrupted by one cancel."""
        gates = {task_id: Gate() for task_id in ("first", "second", "third")}
        descriptors = [catalog.get("alpha"), catalog.get("beta")] + [
            make_descriptor(task_id, gate) for task_id, gate in gates.items()
        ]
        service = make_service(catalog_override=TaskCatalog(descriptors), max_workers=5)
        session = await service.create_session(["alpha", "beta", "first", "second", "third"])
        stream = asyncio.create_task(collect(service.subscribe(session.id)))

        await wait_until(lambda: all(g.started.is_set() for g in gates.values()))
        await wait_until(lambda: session.completed == 2)
        await service.cancel_session(session.id)
        session = await service.wait_for_session(session.id, timeout=10)
        snapshots = await asyncio.wait_for(stream, timeout=10)

        assert session.status == SessionStatus.CANCELLED
        assert all(g.cancelled for g in gates.values())
        assert [s.status for s in session.task_states.values()] == [
            TaskStatus.SUCCEEDED, TaskStatus.SUCCEEDED,
            TaskStatus.CANCELLED, TaskStatus.CANCELLED, TaskStatus.CANCELLED,
        ]
        # last cancelled transition, then exactly one closing snapshot
        assert [s.is_terminal for s in snapshots].count(True) == 2
        assert [s.completed for s in snapshots] == sorted(s.completed for s in snapshots)
        assert snapshots[-1].status == SessionStatus.CANCELLED
        assert snapshots[-1].progress == 1.0

        bundle = service.fetch_results(session.id, OutputFormat.ZIP)
        with zipfile.ZipFile(io.BytesIO(bundle.content)) as archive:
            assert sorted(archive.namelist()) == ["alpha/alpha.txt", "beta/beta.txt"]

    @pytest.mark.asyncio
    async def test_double_cancel_is_noop(self, service, gate):
        session = await service.create_session(["blocking"])
        await wait_until(gate.started.is_set)

        first = await service.cancel_session(session.id)
        second = await service.cancel_session(session.id)
        session = await service.wait_for_session(session.id, timeout=10)

        assert second == first
        assert session.status == SessionStatus.CANCELLED
        assert await service.cancel_session(session.id) == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_completed_session_returns_status(self, service):
        session = await service.create_session(["alpha"])
        await service.wait_for_session(session.id, timeout=10)

        assert await service.cancel_session(session.id) == SessionStatus.COMPLETED
        assert service.get_session(session.id).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_pending_session(self, service):
        """Cancelling before start settles every task immediately."""
        session = service.scheduler.create(["alpha", "beta"])

        status = await service.cancel_session(session.id)
        await service.scheduler.start(session.id)

        assert status == SessionStatus.CANCELLED
        assert session.started_at is None
        assert all(s.status == TaskStatus.CANCELLED for s in session.task_states.values())

    @pytest.mark.asyncio
    async def test_cancel_terminates_spawned_process(self, service):
        """Cancellation kills the helper process instead of abandoning it."""
        session = await service.create_session(["sleeper"])
        await wait_until(lambda: bool(service.processes.get(session.id)))
        process = service.processes.get(session.id)[0].process

        await service.cancel_session(session.id)
        session = await service.wait_for_session(session.id, timeout=15)

        assert session.task_states["sleeper"].status == TaskStatus.CANCELLED
        assert process.returncode is not None
        assert service.processes.get(session.id) == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_session(self, service):
        with pytest.raises(SessionNotFound):
            await service.cancel_session("missing")


class TestResults:
    """Tests for fetching and removing results."""

    @pytest.mark.asyncio
    async def test_fetch_is_idempotent(self, service, catalog, temp_dir):
        """Repeated fetches return identical bytes and re-run nothing."""
        session = await service.create_session(["alpha", "broken"])
        await service.wait_for_session(session.id, timeout=10)

        first = service.fetch_results(session.id)
        second = service.fetch_results(session.id)
        rendered_again = ResultPackager(service.store, catalog, temp_dir).package(session.id)

        assert first.content == second.content
        assert rendered_again.content == first.content
        assert service.get_session(session.id).task_states["alpha"].status == TaskStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_fetch_running_session_rejected(self, service, gate):
        session = await service.create_session(["blocking"])
        await wait_until(gate.started.is_set)

        with pytest.raises(SessionNotTerminal):
            service.fetch_results(session.id)

        gate.release.set()
        await service.wait_for_session(session.id, timeout=10)
        assert service.fetch_results(session.id).size > 0

    @pytest.mark.asyncio
    async def test_remove_session(self, service, gate, config):
        session = await service.create_session(["blocking"])
        await wait_until(gate.started.is_set)

        with pytest.raises(SessionNotTerminal):
            service.remove_session(session.id)

        gate.release.set()
        await service.wait_for_session(session.id, timeout=10)
        service.remove_session(session.id)

        with pytest.raises(SessionNotFound):
            service.get_session(session.id)
        assert not (config.work_dir / session.id).exists()

    @pytest.mark.asyncio
    async def test_evict_expired(self, service):
        session = await service.create_session(["alpha"])
        await service.wait_for_session(session.id, timeout=10)
        scheduler = service.scheduler

        assert scheduler.evict_expired(now=session.completed_at + 1) == []
        evicted = scheduler.evict_expired(
            now=session.completed_at + scheduler.retention_seconds + 1
        )

        assert evicted == [session.id]
        with pytest.raises(SessionNotFound):
            service.get_session(session.id)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_sessions(self, service, gate):
        session = await service.create_session(["blocking", "alpha"])
        await wait_until(gate.started.is_set)

        await service.scheduler.shutdown(timeout=10)

        assert session.status == SessionStatus.CANCELLED
        assert service.scheduler.active_sessions() == 0
