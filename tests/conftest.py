"""
Shared fixtures: deterministic clocks, a manual scheduler and an in-memory
practice database.
"""

import os
import sys

# config refuses to import without a strong SECRET_KEY
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-0123456789")
os.environ.setdefault("DATABASE_URL", "sqlite://")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from nutri_core.auth import create_nutricionista
from nutri_core.database import DatabaseConfig, DatabaseManager


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class _Handle:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Scheduler driven by advance(); runs due callbacks in time order."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay, callback):
        handle = _Handle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def pending(self):
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds: float):
        target = self.now + seconds
        while True:
            due = [h for h in self.pending() if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            handle.cancelled = True
            self.now = handle.when
            handle.callback()
        self.now = target


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def db_manager():
    manager = DatabaseManager(DatabaseConfig("sqlite://"))
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def session(db_manager):
    with db_manager.get_session() as session:
        yield session


@pytest.fixture
def nutricionista(session):
    return create_nutricionista(
        session,
        nombre="Camila",
        apellido="Rojas",
        rut="12345678-5",
        correo="camila@nutri.cl",
        password="Segura#2024",
    )
