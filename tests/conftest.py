"""Test fixtures for tool-continuity module."""

import pytest
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from amplifier_module_tool_continuity.store import ContinuityStore


class StepClock:
    """Clock that moves forward a fixed step on every call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        self.current += self.step
        return self.current


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_continuity.db"
        yield db_path


@pytest.fixture
def store(temp_db):
    """Store whose timestamps increase by one second per write."""
    return ContinuityStore(db_path=temp_db, clock=StepClock())
