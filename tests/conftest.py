"""
tests/conftest.py — Shared fixtures: isolated logs and config environment.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from sparse_query.core.config import LoggingConfig
from sparse_query.core.logger import configure_logger


@pytest.fixture(autouse=True)
def _isolated_logger(tmp_path: Path) -> None:
    """Route JSONL logs into the test's temporary directory."""
    configure_logger(LoggingConfig(level="DEBUG", log_dir=str(tmp_path / "_fixture_logs")))


@pytest.fixture(autouse=True)
def _no_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's SPARSE_QUERY_CONFIG from leaking into tests."""
    monkeypatch.delenv("SPARSE_QUERY_CONFIG", raising=False)
