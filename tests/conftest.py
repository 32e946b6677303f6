"""Shared test fixtures for TeamHub tests."""

import sys
import tempfile
from pathlib import Path

import pytest

# Ensure the project root and the bots directory are importable
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "bots"))

from pkg.hub.assistant import AIAssistant
from pkg.hub.config import HubConfig
from pkg.hub.notify import Notifier
from pkg.hub.store import SqliteRemoteStore
from pkg.hub.teamhub import TeamHub


@pytest.fixture
def db_path():
    """Temporary SQLite file, removed with its WAL side files afterwards."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        path = tmp.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        Path(path + suffix).unlink(missing_ok=True)


@pytest.fixture
def store(db_path):
    s = SqliteRemoteStore(db_path)
    yield s
    s.close()


class FakeClock:
    """Manually advanced monotonic clock for notice expiry."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records the backoff delays an assistant would have slept."""
    return []


@pytest.fixture
def assistant(sleeps):
    return AIAssistant(api_key="test-key", backoff=0.5, sleep=sleeps.append)


@pytest.fixture
def hub(store, assistant, clock):
    h = TeamHub(store, assistant, Notifier(ttl=5.0, clock=clock), HubConfig(cleanup_days=30))
    yield h
    h.close()


def event_fields(**overrides):
    fields = {
        "name": "Client demo",
        "start_date": "2026-10-20",
        "end_date": "2026-10-21",
        "poc": "Dana",
    }
    fields.update(overrides)
    return fields
