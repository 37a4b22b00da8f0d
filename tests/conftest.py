"""Shared fixtures: stub submitter, deterministic clocks, app metadata."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from simple_analytics.ingestion.submitter import Delivered, Failed, Submitter
from simple_analytics.utils.schemas import AppMetadata


class StubSubmitter(Submitter):
    """Records every batch; succeeds or fails on demand, optionally blocking."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.batches = []
        self.gate = None
        self.closed = False

    def submit(self, batch):
        self.batches.append(list(batch))
        if self.gate is not None:
            self.gate.wait(5)
        if self.succeed:
            return Delivered(message="stored")
        return Failed(batch=batch, reason="stub")

    def close(self):
        self.closed = True


class TickingClock:
    """Wall clock that advances one millisecond per reading."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc).astimezone()

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now


class ManualClock:
    """Monotonic clock moved by hand."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def metadata():
    return AppMetadata(
        device_id="DEVICE-0001",
        app_name="AppAnalytics Tester",
        app_version="2.4.1",
        platform="macOS",
        system_version="14.5.0",
    )


@pytest.fixture
def stub_submitter():
    return StubSubmitter()


@pytest.fixture
def ticking_clock():
    return TickingClock()


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def settled():
    return threading.Event()
