"""Pytest configuration for path setup and shared fixtures.

The test suite imports the ``settlement`` package from ``settlement/src``.
When pytest is executed as an installed script, the repository root is not
automatically added to ``sys.path``.  This file ensures that both the project
root (for ``tests.helpers``) and ``settlement/src`` are available for imports
during test collection.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

for path in (ROOT, ROOT / "settlement" / "src"):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from settlement.config import RetrySettings, Settings  # noqa: E402
from settlement.services.state_store import InMemorySettlementStore  # noqa: E402

from tests.helpers.fakes import FixedClock  # noqa: E402


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    # Short delays so that retries in tests never wait on real time
    return Settings(
        retry=RetrySettings(max_attempts=3, initial_delay=0.01, max_delay=0.05, jitter=0.0),
        max_redeliveries=2,
        redelivery_backoff_seconds=0.0,
    )


@pytest.fixture
def store() -> InMemorySettlementStore:
    return InMemorySettlementStore()
