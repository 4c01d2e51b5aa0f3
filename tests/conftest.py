"""Shared pytest fixtures and configuration."""
from datetime import datetime, timezone

import pytest

from slowboot_app import LISTEN_AFTER, AppSettings, ServiceClock, build_context

# Pytest markers are defined in pyproject.toml

FIXED_WALL = datetime(2024, 5, 1, 12, 30, 45, 123000, tzinfo=timezone.utc)


class FakeTime:
    """Monotonic millisecond source that only moves when told to."""

    def __init__(self, start_ms: int = 1_000_000):
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms

    def advance(self, seconds: float = 0, ms: int = 0) -> int:
        self.ms += int(seconds * 1000) + ms
        return self.ms


def make_settings(**overrides) -> AppSettings:
    """Settings with every field pinned, so the host environment cannot leak in."""
    values = {
        "startup_delay_seconds": 2,
        "port": 0,
        "host": "127.0.0.1",
        "app_version": "1.2.3",
        "listen_mode": LISTEN_AFTER,
        "drain_timeout_seconds": 10,
        "json_logs": False,
        "log_level": "INFO",
    }
    values.update(overrides)
    return AppSettings(**values)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def make_context(fake_time):
    """Factory for a ServiceContext driven by the fake clock."""
    def _make(**overrides):
        clock = ServiceClock.start(source=fake_time, wall=lambda: FIXED_WALL)
        return build_context(
            make_settings(**overrides),
            clock,
            container_id="abc123def456",
        )
    return _make
