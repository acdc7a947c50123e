"""
Service configuration.

Loaded from a YAML file (config.yaml next to the project, or the path in
HOSTDIAG_CONFIG / --config). Every key is optional.

Example:
    output_dir: ~/Desktop
    max_workers: 8
    retention_seconds: 3600
    api:
      host: 127.0.0.1
      port: 8080
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from shared.logging import get_logger

from .models import OutputFormat

log = get_logger("diagnostics", "config")

CONFIG_ENV = "HOSTDIAG_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


def default_output_dir() -> Path:
    """The user's Desktop when there is one, else the working directory."""
    desktop = Path.home() / "Desktop"
    if desktop.is_dir():
        return desktop
    return Path.cwd()


def default_max_workers() -> int:
    """Bounded pool sized to available parallelism."""
    return min(32, (os.cpu_count() or 1) + 4)


@dataclass
class ApiConfig:
    """HTTP/WebSocket listener settings."""
    host: str = "127.0.0.1"
    port: int = 8080

    def to_dict(self) -> dict:
        return {"host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, data: dict) -> "ApiConfig":
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=int(data.get("port", 8080)),
        )


@dataclass
class ServiceConfig:
    """Settings for DiagnosticService and its components."""
    output_dir: Path = field(default_factory=default_output_dir)
    work_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "hostdiag")
    max_workers: int = field(default_factory=default_max_workers)
    retention_seconds: float = 3600.0
    eviction_interval: float = 60.0
    termination_grace_seconds: float = 5.0
    default_output_format: OutputFormat = OutputFormat.BOTH
    materialize_on_complete: bool = True
    elevated: Optional[bool] = None  # None = probe the host
    api: ApiConfig = field(default_factory=ApiConfig)

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    def to_dict(self) -> dict:
        return {
            "output_dir": str(self.output_dir),
            "work_dir": str(self.work_dir),
            "max_workers": self.max_workers,
            "retention_seconds": self.retention_seconds,
            "eviction_interval": self.eviction_interval,
            "termination_grace_seconds": self.termination_grace_seconds,
            "default_output_format": self.default_output_format.value,
            "materialize_on_complete": self.materialize_on_complete,
            "elevated": self.elevated,
            "api": self.api.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceConfig":
        defaults = cls()
        output_dir = data.get("output_dir")
        work_dir = data.get("work_dir")
        return cls(
            output_dir=Path(output_dir).expanduser() if output_dir else defaults.output_dir,
            work_dir=Path(work_dir).expanduser() if work_dir else defaults.work_dir,
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            retention_seconds=float(data.get("retention_seconds", defaults.retention_seconds)),
            eviction_interval=float(data.get("eviction_interval", defaults.eviction_interval)),
            termination_grace_seconds=float(
                data.get("termination_grace_seconds", defaults.termination_grace_seconds)
            ),
            default_output_format=OutputFormat(
                data.get("default_output_format", defaults.default_output_format.value)
            ),
            materialize_on_complete=bool(
                data.get("materialize_on_complete", defaults.materialize_on_complete)
            ),
            elevated=data.get("elevated"),
            api=ApiConfig.from_dict(data.get("api") or {}),
        )


def load_config(path: Optional[Path] = None) -> ServiceConfig:
    """
    Load configuration from YAML.

    Resolution order: explicit path, HOSTDIAG_CONFIG, config.yaml at the
    project root. A missing file yields defaults.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV)
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    path = Path(path)
    if not path.exists():
        log.debug("diagnostics.config.defaults", path=str(path))
        return ServiceConfig()

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")

    config = ServiceConfig.from_dict(data)
    log.info("diagnostics.config.loaded", path=str(path))
    return config
