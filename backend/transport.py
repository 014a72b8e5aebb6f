"""Control-channel transports.

Both transports expose the same capability set so the channel never
knows which one it is talking to:

    connect(url), send(text), close(code, reason), ready_state
    on_open(), on_message(text), on_error(exc), on_close(code, reason)

Callbacks run on the event loop thread. After close() is called the
transport reports nothing further to its owner.
"""

import asyncio
from enum import IntEnum
from typing import Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from config import ABNORMAL_CLOSE_CODE, NORMAL_CLOSE_CODE


class ReadyState(IntEnum):
    # Same numbering as the browser WebSocket API
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


class Transport:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self.ready_state = ReadyState.CLOSED
        self.url: Optional[str] = None
        self.on_open: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None
        self.on_close: Optional[Callable[[int, str], None]] = None

    @property
    def loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def detach(self):
        """Drop all callbacks so late events cannot reach the owner."""
        self.on_open = None
        self.on_message = None
        self.on_error = None
        self.on_close = None

    def _emit_open(self):
        if self.on_open:
            self.on_open()

    def _emit_message(self, text: str):
        if self.on_message:
            self.on_message(text)

    def _emit_error(self, exc: Exception):
        if self.on_error:
            self.on_error(exc)

    def _emit_close(self, code: int, reason: str):
        if self.on_close:
            self.on_close(code, reason)

    def connect(self, url: str):
        raise NotImplementedError

    def send(self, text: str):
        raise NotImplementedError

    def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = ""):
        raise NotImplementedError


class WebSocketTransport(Transport):
    """WebSocket client built on the `websockets` asyncio implementation."""

    def __init__(self, loop=None, open_timeout: float = 5.0):
        super().__init__(loop)
        self._open_timeout = open_timeout
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._outbox: asyncio.Queue = asyncio.Queue()

    def connect(self, url: str):
        self.url = url
        self.ready_state = ReadyState.CONNECTING
        self._task = self.loop.create_task(self._run(url))

    def send(self, text: str):
        if self.ready_state != ReadyState.OPEN:
            raise ConnectionError("WebSocket is not open")
        self._outbox.put_nowait(text)

    def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = ""):
        if self.ready_state == ReadyState.CLOSED:
            return
        self.ready_state = ReadyState.CLOSING
        self.detach()
        if self._ws is not None:
            self.loop.create_task(self._close_ws(code, reason))
        elif self._task is not None:
            self._task.cancel()
            self.ready_state = ReadyState.CLOSED

    async def _close_ws(self, code: int, reason: str):
        try:
            await self._ws.close(code=code, reason=reason)
        except (OSError, ConnectionClosed) as e:
            print(f"[WS] Error closing {self.url}: {e}")
        finally:
            self.ready_state = ReadyState.CLOSED
            if self._task is not None:
                self._task.cancel()

    async def _run(self, url: str):
        try:
            self._ws = await ws_connect(url, open_timeout=self._open_timeout)
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            self.ready_state = ReadyState.CLOSED
            self._emit_error(e)
            self._emit_close(ABNORMAL_CLOSE_CODE, str(e) or type(e).__name__)
            return

        self.ready_state = ReadyState.OPEN
        writer = self.loop.create_task(self._write_loop())
        self._emit_open()
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", "replace")
                self._emit_message(message)
        except ConnectionClosed:
            pass
        except OSError as e:
            self._emit_error(e)
        finally:
            writer.cancel()

        self.ready_state = ReadyState.CLOSED
        code = self._ws.close_code
        self._emit_close(code if code is not None else ABNORMAL_CLOSE_CODE, self._ws.close_reason or "")

    async def _write_loop(self):
        while True:
            text = await self._outbox.get()
            try:
                await self._ws.send(text)
            except ConnectionClosed:
                # reader side reports the close
                return


class SimulatedTransport(Transport):
    """In-memory stand-in for the vehicle: every send is logged, opening always succeeds."""

    def __init__(self, loop=None):
        super().__init__(loop)
        self.sent: list[str] = []
        self._pending = None

    def connect(self, url: str):
        self.url = url
        self.ready_state = ReadyState.CONNECTING
        print(f"[Sim] Simulated WebSocket connection to {url}")
        self._pending = self.loop.call_soon(self._open)

    def _open(self):
        self._pending = None
        self.ready_state = ReadyState.OPEN
        self._emit_open()

    def send(self, text: str):
        if self.ready_state != ReadyState.OPEN:
            raise ConnectionError("Simulated link is not open")
        self.sent.append(text)
        print(f"[Sim] -> {text}")

    def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = ""):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self.ready_state == ReadyState.CLOSED:
            return
        self.ready_state = ReadyState.CLOSED
        print(f"[Sim] Simulated WebSocket closed ({code})")
        self._emit_close(code, reason)

    def drop(self, code: int = ABNORMAL_CLOSE_CODE, reason: str = "link lost"):
        """Simulate the vehicle disappearing (power loss, out of range)."""
        if self.ready_state == ReadyState.CLOSED:
            return
        self.ready_state = ReadyState.CLOSED
        print(f"[Sim] Simulated link dropped ({code})")
        self._emit_close(code, reason)
