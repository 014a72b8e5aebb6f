"""Passive discovery of the vehicle from its UDP broadcast beacon.

The vehicle periodically broadcasts `ESP32|<ip>|<mac>` on port 4210.
The listener never times out; callers wanting a deadline impose it.
"""

import asyncio
import socket
from enum import Enum
from typing import Callable, Optional

from config import (
    BEACON_PREFIX, DISCOVERY_PORT, SIMULATED_DETECTION_DELAY, SIMULATED_IP, SIMULATED_MAC,
)


def parse_beacon(data) -> Optional[tuple[str, str]]:
    """Return (ip, mac) for a valid beacon, None for anything else."""
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(data, str):
        return None
    text = data.strip()
    if not text.startswith(BEACON_PREFIX):
        return None
    parts = text.split("|")
    if len(parts) < 3:
        return None
    ip, mac = parts[1].strip(), parts[2].strip()
    if not ip or not mac:
        return None
    return ip, mac


class _BeaconProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_datagram):
        self._on_datagram = on_datagram

    def datagram_received(self, data, addr):
        self._on_datagram(data)

    def error_received(self, exc):
        print(f"[Discovery] Socket error: {exc}")


class UdpBeaconSocket:
    """Connectionless endpoint: bind(port), on_message(cb), close()."""

    def __init__(self, loop=None, host: str = "0.0.0.0"):
        self._loop = loop
        self._host = host
        self._transport = None
        self._callback = None

    @property
    def loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def local_port(self) -> Optional[int]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[1]

    def on_message(self, callback: Callable[[bytes], None]):
        self._callback = callback

    async def bind(self, port: int):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self._host, port))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._transport, _ = await self.loop.create_datagram_endpoint(
            lambda: _BeaconProtocol(self._deliver), sock=sock,
        )

    def _deliver(self, data: bytes):
        if self._callback:
            self._callback(data)

    def close(self):
        if self._transport is not None:
            self._transport.close()
            self._transport = None


class SimulatedBeaconSocket:
    """Test-mode stand-in that 'hears' one beacon shortly after binding."""

    def __init__(self, loop=None, ip: str = SIMULATED_IP, mac: str = SIMULATED_MAC,
                 delay: float = SIMULATED_DETECTION_DELAY):
        self._loop = loop
        self._beacon = f"{BEACON_PREFIX}{ip}|{mac}".encode("utf-8")
        self._delay = delay
        self._timer = None
        self._callback = None

    @property
    def loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def on_message(self, callback):
        self._callback = callback

    async def bind(self, port: int):
        print(f"[Sim] Simulated discovery on port {port}")
        self._timer = self.loop.call_later(self._delay, self._emit)

    def _emit(self):
        self._timer = None
        if self._callback:
            self._callback(self._beacon)

    def close(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class DiscoveryState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CLOSED = "closed"


class DiscoveryListener:
    def __init__(self, socket_factory: Callable = UdpBeaconSocket, loop=None):
        self._socket_factory = socket_factory
        self._loop = loop
        self._socket = None
        self._on_detected = None
        self.state = DiscoveryState.IDLE
        self.port: Optional[int] = None
        self.ip: Optional[str] = None
        self.mac: Optional[str] = None
        self.error: Optional[str] = None

    async def start(self, port: int = DISCOVERY_PORT,
                    on_detected: Optional[Callable[[str, str], None]] = None) -> bool:
        """Bind and listen. Returns False (and keeps `error`) if the port cannot be bound."""
        if self.state == DiscoveryState.LISTENING:
            self.stop()
        self._on_detected = on_detected
        self.port = port
        self.error = None
        sock = self._socket_factory(loop=self._loop)
        sock.on_message(self._handle_datagram)
        try:
            await sock.bind(port)
        except OSError as e:
            self.error = f"Cannot listen on UDP port {port}: {e}"
            self.state = DiscoveryState.CLOSED
            print(f"[Discovery] {self.error}")
            return False
        self._socket = sock
        self.state = DiscoveryState.LISTENING
        print(f"[Discovery] Listening for beacons on UDP port {port}")
        return True

    def stop(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        self._on_detected = None
        self.state = DiscoveryState.CLOSED

    def _handle_datagram(self, data):
        if self.state != DiscoveryState.LISTENING:
            return
        parsed = parse_beacon(data)
        if parsed is None:
            return
        ip, mac = parsed
        if ip == self.ip:
            return
        self.ip, self.mac = ip, mac
        print(f"[Discovery] Vehicle detected: IP={ip}, MAC={mac}")
        if self._on_detected:
            self._on_detected(ip, mac)

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "port": self.port,
            "ip": self.ip,
            "mac": self.mac,
            "error": self.error,
        }
