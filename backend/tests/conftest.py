"""Shared test fixtures for backend tests."""

import sys
import os

# Add the backend and sitl directories to the Python path so we can import modules directly
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "sitl"))

import pytest

from transport import ReadyState, Transport


class FakeTimer:
    def __init__(self, when, seq, callback, args):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Just enough of an event loop for call_later/call_soon, driven by advance()."""

    def __init__(self):
        self.now = 0.0
        self._timers: list[FakeTimer] = []
        self._seq = 0

    def time(self):
        return self.now

    def call_later(self, delay, callback, *args):
        self._seq += 1
        timer = FakeTimer(self.now + delay, self._seq, callback, args)
        self._timers.append(timer)
        return timer

    def call_soon(self, callback, *args):
        return self.call_later(0, callback, *args)

    def pending(self) -> list:
        return [t for t in self._timers if not t.cancelled]

    def delays(self) -> list:
        """Remaining delay of every live timer, soonest first."""
        return sorted(round(t.when - self.now, 6) for t in self.pending())

    def advance(self, seconds: float):
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.when <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self.now = max(self.now, timer.when)
            timer.callback(*timer.args)
        self._timers = self.pending()
        self.now = target


class FakeTransport(Transport):
    """Transport whose lifecycle is driven by the test."""

    instances: list = []

    def __init__(self, loop=None):
        super().__init__(loop)
        self.sent: list[str] = []
        self.closed_with = None
        FakeTransport.instances.append(self)

    def connect(self, url):
        self.url = url
        self.ready_state = ReadyState.CONNECTING

    def send(self, text):
        if self.ready_state != ReadyState.OPEN:
            raise ConnectionError("not open")
        self.sent.append(text)

    def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)
        self.ready_state = ReadyState.CLOSED

    # --- driven by tests ---

    def fire_open(self):
        self.ready_state = ReadyState.OPEN
        self._emit_open()

    def fire_message(self, text):
        self._emit_message(text)

    def fire_error(self, exc=None):
        self._emit_error(exc or ConnectionError("boom"))

    def fire_close(self, code, reason=""):
        self.ready_state = ReadyState.CLOSED
        self._emit_close(code, reason)


class FakeBeaconSocket:
    instances: list = []

    def __init__(self, loop=None, fail_with=None):
        self.callback = None
        self.bound_port = None
        self.closed = False
        self.fail_with = fail_with
        FakeBeaconSocket.instances.append(self)

    def on_message(self, callback):
        self.callback = callback

    async def bind(self, port):
        if self.fail_with is not None:
            raise self.fail_with
        self.bound_port = port

    def deliver(self, data):
        self.callback(data)

    def close(self):
        self.closed = True


class DictStorage:
    def __init__(self, data=None):
        self.data = dict(data or {})

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value


class RecordingChannel:
    """Stands in for ControlChannel where only send/connected matter."""

    def __init__(self, connected=True):
        self.connected = connected
        self.sent: list[str] = []

    def send(self, payload):
        if not self.connected:
            return False
        self.sent.append(payload)
        return True


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def fake_transports():
    FakeTransport.instances = []
    yield FakeTransport.instances
    FakeTransport.instances = []


@pytest.fixture
def fake_sockets():
    FakeBeaconSocket.instances = []
    yield FakeBeaconSocket.instances
    FakeBeaconSocket.instances = []


@pytest.fixture
def recording_channel():
    return RecordingChannel()
