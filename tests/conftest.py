"""Shared test fixtures for perch tests."""

import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from perch.config import ActionTimeouts, DashboardConfig
from tests.fixtures.snapshots import NOW


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def perch_dir(temp_dir):
    """Point PERCH_DIR at a scratch directory and clear GT_ROOT."""
    path = temp_dir / ".perch"
    path.mkdir()
    with patch.dict(os.environ, {"PERCH_DIR": str(path)}):
        os.environ.pop("GT_ROOT", None)
        yield path


@pytest.fixture
def town_root(temp_dir):
    root = temp_dir / "gt"
    root.mkdir()
    return root


@pytest.fixture
def config(town_root, temp_dir):
    return DashboardConfig(
        town_root=town_root,
        perch_dir=temp_dir / ".perch",
        refresh_interval=10.0,
        timeouts=ActionTimeouts(default=1.0, long=2.0, create=1.5, detail=1.0, refresh=1.0),
    )


@pytest.fixture
def mock_runner():
    """A CommandRunner stand-in: ``run`` returns canned stdout."""
    runner = MagicMock()
    runner.run.return_value = ""
    return runner


@pytest.fixture
def clock():
    return MagicMock(return_value=NOW)
