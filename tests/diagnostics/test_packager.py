"""
Tests for diagnostics/packager.py
"""

import io
import json
import zipfile

import pytest

from diagnostics.errors import SessionNotFound, SessionNotTerminal
from diagnostics.models import (
    Artifact,
    OutputFormat,
    Session,
    SessionStatus,
    TaskState,
    TaskStatus,
    TaskTransition,
)
from diagnostics.packager import REPORT_NAME, ResultPackager
from diagnostics.store import SessionStore


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def packager(store, catalog, temp_dir) -> ResultPackager:
    return ResultPackager(store, catalog, temp_dir / "out")


@pytest.fixture
def finished_session(store) -> Session:
    """alpha succeeded, broken failed, beta cancelled."""
    ids = ("alpha", "broken", "beta")
    states = {tid: TaskState(tid, tid.title()) for tid in ids}
    session = Session(
        id="sess-1",
        selected_task_ids=ids,
        task_states=states,
        created_at=1700000000.0,
        started_at=1700000001.0,
        system_info={"computer_name": "TESTBOX", "is_admin": False},
    )
    states["alpha"].apply(TaskTransition("alpha", TaskStatus.RUNNING, at=1700000001.0))
    states["alpha"].apply(TaskTransition(
        "alpha", TaskStatus.SUCCEEDED, at=1700000002.5,
        output=(
            Artifact("alpha.txt", b"alpha output"),
            Artifact("System.evtx", b"\x00\x01", "application/octet-stream"),
        ),
    ))
    states["broken"].apply(TaskTransition("broken", TaskStatus.RUNNING, at=1700000001.0))
    states["broken"].apply(TaskTransition(
        "broken", TaskStatus.FAILED, error="tool exploded", at=1700000003.0
    ))
    states["beta"].apply(TaskTransition("beta", TaskStatus.CANCELLED, at=1700000004.0))
    session.completed_at = 1700000004.0
    session.refresh_status()
    store.add(session)
    return session


class TestReport:
    """Tests for the JSON report."""

    def test_report_structure(self, packager, finished_session):
        report = packager.build_report(finished_session)

        assert report["session_id"] == "sess-1"
        assert report["status"] == "cancelled"
        assert report["system_info"]["computer_name"] == "TESTBOX"
        assert report["summary"] == {
            "total_tasks": 3,
            "successful_tasks": 1,
            "failed_tasks": 1,
            "cancelled_tasks": 1,
            "total_duration_seconds": 3.0,
            "warnings": ["Broken: tool exploded"],
        }
        assert [t["id"] for t in report["tasks"]] == ["alpha", "broken", "beta"]

    def test_task_entries(self, packager, finished_session):
        alpha, broken, beta = packager.build_report(finished_session)["tasks"]

        assert alpha["status"] == "succeeded"
        assert alpha["category"] == "System"
        assert alpha["duration_ms"] == 1500
        assert alpha["output"][0]["text"] == "alpha output"
        assert "text" not in alpha["output"][1]
        assert broken["error"] == "tool exploded"
        assert broken["output"] == []
        assert beta["status"] == "cancelled"
        assert beta["started_at"] is None

    def test_json_package(self, packager, finished_session):
        output = packager.package("sess-1", OutputFormat.JSON)

        assert output.filename == "hostdiag_sess-1.json"
        assert output.media_type == "application/json"
        assert json.loads(output.content)["session_id"] == "sess-1"


class TestArchive:
    """Tests for the ZIP bundle."""

    def test_zip_contains_only_successful_output(self, packager, finished_session):
        output = packager.package("sess-1", OutputFormat.ZIP)

        with zipfile.ZipFile(io.BytesIO(output.content)) as archive:
            assert sorted(archive.namelist()) == ["alpha/System.evtx", "alpha/alpha.txt"]
            assert archive.read("alpha/System.evtx") == b"\x00\x01"

    def test_both_embeds_report(self, packager, finished_session):
        output = packager.package("sess-1", OutputFormat.BOTH)

        assert output.filename == "hostdiag_sess-1.zip"
        with zipfile.ZipFile(io.BytesIO(output.content)) as archive:
            assert REPORT_NAME in archive.namelist()
            report = json.loads(archive.read(REPORT_NAME))
        assert report["summary"]["successful_tasks"] == 1

    def test_entries_use_completion_time(self, packager, finished_session):
        output = packager.package("sess-1", OutputFormat.ZIP)

        with zipfile.ZipFile(io.BytesIO(output.content)) as archive:
            stamps = {info.date_time for info in archive.infolist()}
        assert len(stamps) == 1


class TestIdempotence:

    def test_repeated_packaging_is_identical(self, store, catalog, temp_dir, finished_session):
        first = ResultPackager(store, catalog, temp_dir).package("sess-1")
        second = ResultPackager(store, catalog, temp_dir).package("sess-1")

        assert first.content == second.content

    def test_cached_result_returned(self, packager, finished_session):
        assert packager.package("sess-1") is packager.package("sess-1")

    def test_forget_drops_cache(self, packager, finished_session):
        first = packager.package("sess-1")
        packager.forget("sess-1")
        again = packager.package("sess-1")

        assert again is not first
        assert again.content == first.content

    def test_materialize_writes_same_bytes(self, packager, finished_session, temp_dir):
        path = packager.materialize(finished_session)

        assert path == temp_dir / "out" / "hostdiag_sess-1.zip"
        assert path.read_bytes() == packager.package("sess-1").content
        assert not path.with_suffix(".zip.tmp").exists()


class TestErrors:

    def test_running_session_rejected(self, packager, store):
        session = Session(
            id="live", selected_task_ids=("alpha",),
            task_states={"alpha": TaskState("alpha", "Alpha")},
        )
        session.started_at = 1.0
        session.refresh_status()
        store.add(session)

        assert session.status == SessionStatus.RUNNING
        with pytest.raises(SessionNotTerminal):
            packager.package("live")

    def test_unknown_session(self, packager):
        with pytest.raises(SessionNotFound):
            packager.package("missing")
