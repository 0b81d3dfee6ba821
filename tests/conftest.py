"""
Test configuration and fixtures
"""
import logging
import os
import sys
from pathlib import Path

# Add src to Python path so tests run without an editable install
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(src_path))

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Keep a developer's NEARLEDGER_* settings out of the tests."""
    for key in list(os.environ):
        if key.startswith("NEARLEDGER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("NEARLEDGER_STORAGE_PATH", str(tmp_path / "storage.json"))


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """CLI runs configure the package logger; undo it between tests."""
    logger = logging.getLogger("nearledger")
    yield
    logger.handlers = []
    logger.setLevel(logging.NOTSET)
