"""Shared fixtures for the empire core test-suite."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from empire_core import telemetry
from empire_core.config import get_settings

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected wherever the code asks for ``now``."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def isolated_telemetry(tmp_path, monkeypatch):
    """Point the telemetry singleton at a throwaway database."""

    monkeypatch.setenv("EMPIRE_TELEMETRY_DB", str(tmp_path / "telemetry.db"))
    monkeypatch.delenv("EMPIRE_ALERT_MAX_PENDING_JOBS", raising=False)
    monkeypatch.delenv("EMPIRE_ALERT_MAX_JOB_AGE_HOURS", raising=False)
    telemetry.reset_telemetry()
    yield
    telemetry.reset_telemetry()


@pytest.fixture
def settings():
    """Default settings with the claim retry delay removed."""

    return replace(get_settings(), claim_retry_delay_seconds=0.0)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
