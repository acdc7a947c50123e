"""
Shared fixtures for diagnostics tests.
"""

from pathlib import Path

import pytest

from diagnostics.catalog import TaskCatalog
from diagnostics.config import ServiceConfig
from diagnostics.models import TaskCategory, TaskDescriptor
from diagnostics.privilege import PrivilegeContext
from diagnostics.service import DiagnosticService

from fakes import Gate, fail, make_descriptor, sleeper, succeed


@pytest.fixture
def gate() -> Gate:
    return Gate()


@pytest.fixture
def descriptors(gate) -> list[TaskDescriptor]:
    return [
        make_descriptor("alpha", succeed, category=TaskCategory.SYSTEM),
        make_descriptor("beta", succeed, category=TaskCategory.HARDWARE),
        make_descriptor("gamma", succeed, category=TaskCategory.NETWORK),
        make_descriptor("delta", succeed),
        make_descriptor("epsilon", succeed),
        make_descriptor("broken", fail),
        make_descriptor("blocking", gate),
        make_descriptor("sleeper", sleeper),
        make_descriptor("admin_only", succeed, requires_elevation=True),
    ]


@pytest.fixture
def catalog(descriptors) -> TaskCatalog:
    return TaskCatalog(descriptors)


@pytest.fixture
def config(temp_dir: Path) -> ServiceConfig:
    return ServiceConfig(
        output_dir=temp_dir / "out",
        work_dir=temp_dir / "work",
        max_workers=4,
        eviction_interval=3600,
        termination_grace_seconds=2.0,
        elevated=False,
    )


@pytest.fixture
def make_service(catalog, config):
    """Factory for services over the fake catalog."""
    def _create(elevated: bool = False, catalog_override=None, **overrides) -> DiagnosticService:
        for key, value in overrides.items():
            setattr(config, key, value)
        return DiagnosticService(
            catalog=catalog_override or catalog,
            config=config,
            privilege=PrivilegeContext(elevated=elevated),
        )
    return _create


@pytest.fixture
def service(make_service) -> DiagnosticService:
    return make_service()
