"""
Root-level shared fixtures for all hostdiag tests.

This file provides common fixtures used across multiple test modules.
Module-specific fixtures should be defined in their respective conftest.py files.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Keep test runs from writing into the project's logs/ directory
os.environ.setdefault("HOSTDIAG_LOG_DIR", tempfile.mkdtemp(prefix="hostdiag_logs_"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Automatically cleaned up after test completion.
    """
    temp_path = Path(tempfile.mkdtemp(prefix="hostdiag_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)
