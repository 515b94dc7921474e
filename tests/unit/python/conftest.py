"""Shared fixtures for PartySync Python unit tests."""

import json
import sys
from pathlib import Path

import pytest

# Add services/ to sys.path so `from lib.config import cfg` works
SERVICES_DIR = Path(__file__).resolve().parents[3] / "services"
sys.path.insert(0, str(SERVICES_DIR))


@pytest.fixture(autouse=True)
def _reset_config_cache():
    """Reset the config module's cache before each test."""
    import lib.config as config_mod
    config_mod._config = None
    yield
    config_mod._config = None


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Provide a temp config file path and patch _SEARCH_PATHS to use it."""
    import lib.config as config_mod

    path = tmp_path / "config.json"
    monkeypatch.setattr(config_mod, "_SEARCH_PATHS", [str(path)])
    return path


@pytest.fixture
def write_config(config_file):
    """Write a dict as JSON to the temp config file.

    Usage:
        def test_something(write_config):
            write_config({"server": {"http_port": 9000}})
            assert cfg("server", "http_port") == 9000
    """
    import lib.config as config_mod

    def _write(data: dict):
        config_file.write_text(json.dumps(data))
        config_mod._config = None  # force re-read
        return config_file

    return _write


@pytest.fixture
def mock_config(monkeypatch):
    """Directly set the config dict without file I/O."""
    import lib.config as config_mod

    def _mock(data: dict):
        monkeypatch.setattr(config_mod, "_config", data)

    return _mock


# --- Engine fixtures ---


class FakeClock:
    """Wall clock + call_later stand-in. Timers fire only on advance()."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now
        self._timers = []   # (due, seq, callback, args)
        self._seq = 0
        self.results = []

    def __call__(self) -> float:
        return self.now

    def call_later(self, delay, callback, *args):
        self._seq += 1
        self._timers.append((self.now + delay, self._seq, callback, args))
        return self._seq

    @property
    def pending(self) -> int:
        return len(self._timers)

    def advance(self, seconds: float) -> list:
        """Move time forward, firing due timers in order. Returns their results."""
        self.now += seconds
        due = sorted(t for t in self._timers if t[0] <= self.now)
        self._timers = [t for t in self._timers if t[0] > self.now]
        fired = [callback(*args) for _, _, callback, args in due]
        self.results.extend(fired)
        return fired


class RecordingChannel:
    """Broadcast channel that keeps every decoded message it is given."""

    def __init__(self, accept: bool = True):
        self.messages = []
        self.accept = accept
        self.closed = False

    def deliver(self, message: str) -> bool:
        if not self.accept or self.closed:
            return False
        self.messages.append(json.loads(message))
        return True

    def events(self, name: str | None = None) -> list:
        """Payloads of every message (of type *name*, if given), in order."""
        return [m["data"] for m in self.messages if name is None or m["type"] == name]

    @property
    def types(self) -> list:
        return [m["type"] for m in self.messages]

    def clear(self):
        self.messages.clear()

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def settings(media_dir):
    from partysync.settings import Settings
    return Settings(media_dir=media_dir, debounce_ms=1000, liveness_timeout=120,
                    sweep_interval=60)


@pytest.fixture
def service(settings, clock):
    """A SyncService with no listeners; sessions are attached by hand."""
    from partysync.service import SyncService
    return SyncService(settings, clock=clock, call_later=clock.call_later)


@pytest.fixture
def join(service):
    """Connect a recording session and (optionally) identify it.

    Usage:
        ctl = join("ctl", "controller")
        viewer = join("v1", "viewer")
        anon = join("x", None)        # connected but never identified
    """

    def _join(session_id: str, role: str | None = "viewer", clear: bool = True):
        channel = RecordingChannel()
        service.connect(session_id, channel, address="10.0.0.2", user_agent="pytest")
        if role is not None:
            service.handle_message(session_id, json.dumps({"type": "identify", "data": {"role": role}}))
        if clear:
            channel.clear()
        return channel

    return _join


@pytest.fixture
def send(service):
    """Send a {"type": ..., "data": ...} frame from a session."""

    def _send(session_id: str, event: str, data: dict | None = None):
        service.handle_message(session_id, json.dumps({"type": event, "data": data or {}}))

    return _send
