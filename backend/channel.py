import asyncio
from enum import Enum
from typing import Callable, Optional

from calibration import send_calibration
from config import (
    CALIBRATION_SETTLE_DELAY, CONTROL_PORT, GREETING, MAX_RECONNECT_ATTEMPTS,
    NORMAL_CLOSE_CODE, RECONNECT_MAX_DELAY, RECONNECT_STEP,
)
from transport import Transport, WebSocketTransport


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def backoff_delay(attempt: int) -> float:
    """Delay before reconnect attempt N (1-based): 1s, 2s, ... capped at 5s."""
    return min(attempt * RECONNECT_STEP, RECONNECT_MAX_DELAY)


class ControlChannel:
    """Single persistent link to the vehicle with bounded automatic reconnect.

    The transport is created through `transport_factory(loop)` on every
    connect attempt, so test mode only swaps the factory. Events coming
    from a transport that has been replaced or closed are dropped.
    """

    def __init__(self, transport_factory: Callable[..., Transport] = WebSocketTransport,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 port: int = CONTROL_PORT,
                 max_attempts: int = MAX_RECONNECT_ATTEMPTS,
                 greeting: Optional[str] = GREETING):
        self._transport_factory = transport_factory
        self._loop = loop
        self._port = port
        self._max_attempts = max_attempts
        self._greeting = greeting

        self._transport: Optional[Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._address: Optional[str] = None
        self._attempts = 0
        self._delay = 0.0
        self._reconnect_timer = None
        self._settle_timer = None
        self._last_error = ""

        self.last_message: Optional[str] = None
        self.calibration = None  # re-sent on every (re)connect when set

        self.on_state_change: Optional[Callable[[ConnectionState], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None

    # --- Properties ---

    @property
    def loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._transport is not None

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def url(self) -> Optional[str]:
        if not self._address:
            return None
        return f"ws://{self._address}:{self._port}/"

    @property
    def status_text(self) -> str:
        if self._state == ConnectionState.CONNECTING:
            return f"Connecting to {self._address}..."
        if self._state == ConnectionState.CONNECTED:
            return f"Connected to {self._address}"
        if self._state == ConnectionState.RECONNECTING:
            return (f"Reconnecting in {self._delay:g}s "
                    f"(attempt {self._attempts}/{self._max_attempts})")
        if self._state == ConnectionState.FAILED:
            return f"Connection failed after {self._max_attempts} attempts"
        return "Disconnected"

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "status": self.status_text,
            "address": self._address,
            "url": self.url,
            "attempts": self._attempts,
            "max_attempts": self._max_attempts,
            "reconnect_delay": self._delay,
            "last_message": self.last_message,
            "last_error": self._last_error,
        }

    # --- Public API ---

    def connect(self, address: str):
        """Open the channel to a (new) address, replacing any current link."""
        self._cancel_timers()
        self._drop_transport()
        self._address = address
        self._attempts = 0
        self._delay = 0.0
        self._open()

    def reconnect(self) -> bool:
        """Manual reconnect: reset the attempt budget and connect now, skipping backoff."""
        if not self._address:
            print("[Channel] Reconnect requested but no vehicle address is known")
            return False
        print(f"[Channel] Manual reconnect to {self._address}")
        self.connect(self._address)
        return True

    def send(self, payload: str) -> bool:
        if not self.connected:
            print(f"[Channel] Not connected, dropping: {payload}")
            return False
        try:
            self._transport.send(payload)
        except (ConnectionError, OSError) as e:
            print(f"[Channel] Send failed ({payload}): {e}")
            return False
        return True

    def close(self):
        """Intentional teardown: no reconnect follows."""
        self._cancel_timers()
        self._drop_transport()
        self._attempts = 0
        self._delay = 0.0
        self._set_state(ConnectionState.DISCONNECTED)

    # --- Internals ---

    def _open(self):
        transport = self._transport_factory(loop=self.loop)
        transport.on_open = lambda: self._handle_open(transport)
        transport.on_message = lambda text: self._handle_message(transport, text)
        transport.on_error = lambda exc: self._handle_error(transport, exc)
        transport.on_close = lambda code, reason: self._handle_close(transport, code, reason)
        self._transport = transport
        self._set_state(ConnectionState.CONNECTING)
        print(f"[Channel] Connecting to {self.url}")
        transport.connect(self.url)

    def _drop_transport(self):
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.detach()
            transport.close(NORMAL_CLOSE_CODE, "client closing")

    def _cancel_timers(self):
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        self._state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _handle_open(self, transport: Transport):
        if transport is not self._transport:
            return
        self._attempts = 0
        self._delay = 0.0
        self._last_error = ""
        self._set_state(ConnectionState.CONNECTED)
        print(f"[Channel] Connected to {self._address}")
        if self._greeting:
            self.send(self._greeting)
        if self.calibration is not None:
            self._settle_timer = self.loop.call_later(CALIBRATION_SETTLE_DELAY, self._send_held_calibration)

    def _send_held_calibration(self):
        self._settle_timer = None
        if send_calibration(self, self.calibration):
            print("[Channel] Calibration sent after connect")

    def _handle_message(self, transport: Transport, text: str):
        if transport is not self._transport:
            return
        self.last_message = text
        if self.on_message:
            self.on_message(text)

    def _handle_error(self, transport: Transport, exc: Exception):
        if transport is not self._transport:
            return
        self._last_error = str(exc) or type(exc).__name__
        print(f"[Channel] Transport error: {self._last_error}")
        self._handle_failure()

    def _handle_close(self, transport: Transport, code: int, reason: str):
        if transport is not self._transport:
            return
        if code == NORMAL_CLOSE_CODE:
            print(f"[Channel] Closed normally by {self._address}")
            self._cancel_timers()
            self._transport.detach()
            self._transport = None
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._last_error = f"closed with code {code}" + (f": {reason}" if reason else "")
        print(f"[Channel] Connection lost ({self._last_error})")
        self._handle_failure()

    def _handle_failure(self):
        """Retry N follows failure N (delay 1..5s); a failure with the budget spent ends in FAILED."""
        self._cancel_timers()
        self._drop_transport()
        if self._attempts >= self._max_attempts:
            self._delay = 0.0
            self._set_state(ConnectionState.FAILED)
            print(f"[Channel] Giving up after {self._attempts} reconnect attempts")
            return
        self._attempts += 1
        self._delay = backoff_delay(self._attempts)
        self._set_state(ConnectionState.RECONNECTING)
        print(f"[Channel] Reconnecting in {self._delay:g}s "
              f"(attempt {self._attempts}/{self._max_attempts})")
        self._reconnect_timer = self.loop.call_later(self._delay, self._retry)

    def _retry(self):
        self._reconnect_timer = None
        self._open()
