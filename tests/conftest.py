import datetime

import pytest

import database
from access_ledger import AccessLedger
from grant_timer import DeadlineTimer

START = datetime.datetime(2026, 3, 14, 9, 30, tzinfo=datetime.timezone.utc)


class FakeClock:
    def __init__(self, start: datetime.datetime = START):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=seconds)
        return self.now


class FakeTimer:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.fn()


class FakeTimerFactory:
    """Collects timers instead of starting threads; tests fire them by hand."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, fn):
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    def fire_all(self):
        for timer in list(self.timers):
            timer.fire()


@pytest.fixture(autouse=True)
def no_supabase(monkeypatch):
    monkeypatch.setattr(database, "get_client", lambda: None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def ledger(clock):
    return AccessLedger(waiting_window_s=120, grant_duration_s=900, retention_s=3600, clock=clock)


@pytest.fixture
def deadline_timer(clock, timers):
    return DeadlineTimer(clock=clock, timer_factory=timers)
