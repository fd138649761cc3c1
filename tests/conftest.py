"""Shared pytest fixtures."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from pixeltrack.app import create_app
from pixeltrack.config import Settings
from pixeltrack.db import create_db_engine, init_schema
from pixeltrack.errors import TransientDeliveryError


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(env="test", database_url=f"sqlite:///{tmp_path / 'pixel.db'}")


@pytest.fixture
def engine(settings):
    eng = create_db_engine(settings.database_url)
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def client(settings, engine):
    app = create_app(settings=settings, engine=engine)
    with TestClient(app) as c:
        yield c


def make_event(session_id: str = "sess_test", event_type: str = "pageview", **overrides) -> Dict[str, Any]:
    ev = {
        "session_id": session_id,
        "event_type": event_type,
        "url": "https://example.com/",
        "referrer": None,
        "timestamp": "2024-05-01T10:00:00.000Z",
        "metadata": {},
    }
    ev.update(overrides)
    return ev


class FakeClock:
    def __init__(self, start: float = 1_714_557_600.0):  # 2024-05-01T10:00:00Z
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, delay: float, fn: Callable[[], None]):
        self.delay = delay
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fn()


class FakeScheduler:
    """Stands in for threading.Timer: records what would run, tests fire it by hand."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, fn: Callable[[], None]) -> FakeTimer:
        t = FakeTimer(delay, fn)
        self.timers.append(t)
        return t

    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def fire_pending(self, delay: Optional[float] = None) -> None:
        for t in list(self.pending()):
            if delay is None or t.delay == delay:
                self.timers.remove(t)
                t.fire()


class StubTransport:
    """Records batches; ``fail_times`` sends raise TransientDeliveryError first."""

    def __init__(self, fail_times: int = 0, error: Optional[Exception] = None):
        self.fail_times = fail_times
        self.error = error
        self.attempts: List[List[Dict[str, Any]]] = []
        self.keepalive: List[bool] = []
        self.delivered: List[Dict[str, Any]] = []

    def send(self, events, keepalive=False):
        self.attempts.append(list(events))
        self.keepalive.append(keepalive)
        if self.error is not None:
            raise self.error
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientDeliveryError("connection refused")
        self.delivered.extend(events)
        return {"message": "Events ingested successfully", "count": len(events)}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()
