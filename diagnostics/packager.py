"""
Result packaging.

Turns a terminal session into a JSON report, a ZIP of raw per-task
artifacts, or both (the ZIP with report.json inside). Output is
deterministic: ZIP entries carry the session's completion time and the
report is rendered with sorted keys, and every rendering is cached so
repeated downloads are byte-identical and never re-run anything.
"""

import io
import json
import os
import threading
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from shared.logging import get_logger

from .catalog import TaskCatalog
from .errors import SessionNotTerminal
from .models import OutputFormat, Session, TaskStatus, format_timestamp
from .store import SessionStore

log = get_logger("diagnostics", "packager")

REPORT_NAME = "report.json"

# ZIP cannot represent timestamps before 1980
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class PackagedOutput:
    """A rendered bundle ready to be written or streamed."""
    session_id: str
    format: OutputFormat
    filename: str
    media_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class ResultPackager:
    """Serializes terminal sessions into reports and archives."""

    def __init__(self, store: SessionStore, catalog: TaskCatalog, output_dir: Path):
        self.store = store
        self.catalog = catalog
        self.output_dir = Path(output_dir)
        self._lock = threading.Lock()
        self._cache: dict[tuple[str, OutputFormat], PackagedOutput] = {}

    def package(
        self,
        session_id: str,
        format: Union[OutputFormat, str, None] = None,
    ) -> PackagedOutput:
        """
        Render a terminal session.

        Args:
            session_id: Session to package
            format: json, zip or both (defaults to the session's format)

        Raises:
            SessionNotFound: unknown or evicted id
            SessionNotTerminal: session is still pending or running
        """
        session = self.store.get(session_id)
        fmt = OutputFormat(format) if format else session.output_format

        if not session.is_terminal:
            raise SessionNotTerminal(session.id, session.status.value)

        key = (session.id, fmt)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        if fmt == OutputFormat.JSON:
            output = PackagedOutput(
                session_id=session.id,
                format=fmt,
                filename=f"hostdiag_{session.id}.json",
                media_type="application/json",
                content=self.render_report(session),
            )
        else:
            output = PackagedOutput(
                session_id=session.id,
                format=fmt,
                filename=f"hostdiag_{session.id}.zip",
                media_type="application/zip",
                content=self.render_archive(session, include_report=fmt == OutputFormat.BOTH),
            )

        with self._lock:
            # First rendering wins so every caller sees the same bytes
            output = self._cache.setdefault(key, output)

        log.info("diagnostics.packager.packaged",
                 session_id=session.id, format=fmt.value, size=output.size)
        return output

    def materialize(self, session: Session, format: Optional[OutputFormat] = None) -> Path:
        """Write the session's bundle into the output directory."""
        output = self.package(session.id, format)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        target = self.output_dir / output.filename

        temp_path = target.with_suffix(target.suffix + ".tmp")
        try:
            with open(temp_path, "wb") as f:
                f.write(output.content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise

        log.info("diagnostics.packager.materialized",
                 session_id=session.id, path=str(target))
        return target

    def forget(self, session_id: str):
        """Drop cached renderings of a removed session."""
        with self._lock:
            for key in [k for k in self._cache if k[0] == session_id]:
                del self._cache[key]

    # ==================== Rendering ====================

    def build_report(self, session: Session) -> dict:
        """Structured report: one entry per selected task, in selection order."""
        tasks = []
        for state in session.task_states.values():
            descriptor = self.catalog.get(state.task_id)
            tasks.append({
                "id": state.task_id,
                "name": state.display_name,
                "category": descriptor.category.value if descriptor else None,
                "status": state.status.value,
                "output": [a.to_dict(include_text=True) for a in state.output or ()],
                "error": state.error,
                "started_at": format_timestamp(state.started_at),
                "finished_at": format_timestamp(state.finished_at),
                "duration_ms": state.duration_ms,
            })

        started = session.started_at or session.created_at
        finished = session.completed_at or started
        return {
            "session_id": session.id,
            "status": session.status.value,
            "generated_at": format_timestamp(session.completed_at),
            "system_info": session.system_info or {},
            "scheduler_error": session.scheduler_error,
            "summary": {
                "total_tasks": session.total,
                "successful_tasks": len(session.states_with(TaskStatus.SUCCEEDED)),
                "failed_tasks": len(session.states_with(TaskStatus.FAILED)),
                "cancelled_tasks": len(session.states_with(TaskStatus.CANCELLED)),
                "total_duration_seconds": round(max(finished - started, 0.0), 3),
                "warnings": session.errors(),
            },
            "tasks": tasks,
        }

    def render_report(self, session: Session) -> bytes:
        report = self.build_report(session)
        return json.dumps(report, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")

    def render_archive(self, session: Session, include_report: bool) -> bytes:
        """ZIP of every captured artifact, laid out as <task_id>/<name>."""
        date_time = _zip_timestamp(session.completed_at or session.created_at)
        buffer = io.BytesIO()

        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            if include_report:
                _write_entry(archive, REPORT_NAME, self.render_report(session), date_time)

            for state in session.task_states.values():
                if state.status != TaskStatus.SUCCEEDED:
                    continue
                for artifact in state.output or ():
                    _write_entry(archive, f"{state.task_id}/{artifact.name}",
                                 artifact.data, date_time)

        return buffer.getvalue()


def _zip_timestamp(ts: float) -> tuple:
    stamp = datetime.fromtimestamp(ts, timezone.utc).timetuple()[:6]
    return max(stamp, _ZIP_EPOCH)


def _write_entry(archive: zipfile.ZipFile, name: str, data: bytes, date_time: tuple):
    info = zipfile.ZipInfo(name, date_time=date_time)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    archive.writestr(info, data)
