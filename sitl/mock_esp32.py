#!/usr/bin/env python3
"""
Mock ESP32 quadcopter for running the remote without hardware.

Broadcasts the discovery beacon on UDP and serves the control WebSocket,
tracking the eight motor lines and the last calibration it received.

Usage:
    python mock_esp32.py --ip 127.0.0.1 --ws-port 8181 --broadcast 127.0.0.1
    ESPDRONE_CONTROL_PORT=8181 uvicorn main:app   (from backend/)
"""

import argparse
import asyncio
import json
import socket

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed


LINE_NAMES = (
    "A1_IN1", "A1_IN2", "A2_IN1", "A2_IN2",
    "B1_IN1", "B1_IN2", "B2_IN1", "B2_IN2",
)
MOTORS = ("A1", "A2", "B1", "B2")


class MockESP32:
    """Simulates the vehicle side of the wire contract."""

    def __init__(self, ip, mac="24:6F:28:00:00:01", ws_port=81,
                 beacon_port=4210, broadcast_addr="255.255.255.255", beacon_interval=1.0):
        self.ip = ip
        self.mac = mac
        self.ws_port = ws_port
        self.beacon_port = beacon_port
        self.broadcast_addr = broadcast_addr
        self.beacon_interval = beacon_interval

        # Motor driver inputs, 0..255 each
        self.lines = {name: 0 for name in LINE_NAMES}
        self.calibration = None
        self.commands_received = 0

        self.running = False
        self._udp = None
        self._server = None

    @property
    def beacon(self) -> bytes:
        return f"ESP32|{self.ip}|{self.mac}".encode("utf-8")

    def motor_outputs(self) -> dict:
        """Signed drive per motor: IN1 forward, IN2 reverse."""
        return {m: self.lines[f"{m}_IN1"] - self.lines[f"{m}_IN2"] for m in MOTORS}

    def handle_message(self, text: str):
        """Apply one control token. Returns the reply text, or None."""
        self.commands_received += 1
        if text.startswith("CALIB:"):
            try:
                self.calibration = json.loads(text[len("CALIB:"):])
            except json.JSONDecodeError:
                return "ERR calibration"
            print(f"  ESP32: Calibration updated {self.calibration}")
            return "OK calibration"

        name, sep, raw = text.partition(":")
        if sep and name in self.lines:
            try:
                value = int(raw)
            except ValueError:
                return f"ERR {text}"
            self.lines[name] = max(0, min(255, value))
            return None

        # Greetings and anything else are free text
        print(f"  ESP32: Message '{text}'")
        return f"ESP32 ready ({self.ip})"

    async def start(self):
        self.running = True
        self._udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._udp.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        self._server = await serve(self._handle_client, "0.0.0.0", self.ws_port)
        print(f"  ESP32 {self.mac} -> ws://{self.ip}:{self.ws_port}/, "
              f"beacon to {self.broadcast_addr}:{self.beacon_port}")

    async def stop(self):
        self.running = False
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        if self._udp:
            self._udp.close()

    async def beacon_loop(self):
        while self.running:
            try:
                self._udp.sendto(self.beacon, (self.broadcast_addr, self.beacon_port))
            except OSError as e:
                print(f"  ESP32: Beacon send failed: {e}")
            await asyncio.sleep(self.beacon_interval)

    async def status_loop(self):
        last = None
        while self.running:
            outputs = self.motor_outputs()
            if outputs != last:
                print(f"  ESP32: Motors {outputs}")
                last = outputs
            await asyncio.sleep(0.5)

    async def _handle_client(self, websocket):
        print("  ESP32: Client connected")
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", "replace")
                reply = self.handle_message(message)
                if reply:
                    await websocket.send(reply)
        except ConnectionClosed:
            pass
        finally:
            print("  ESP32: Client disconnected, stopping motors")
            for name in self.lines:
                self.lines[name] = 0


async def run(args):
    esp = MockESP32(
        args.ip,
        ws_port=args.ws_port,
        beacon_port=args.beacon_port,
        broadcast_addr=args.broadcast,
        beacon_interval=args.interval,
    )
    await esp.start()
    print("\nMock ESP32 running. Press Ctrl+C to stop.")
    try:
        await asyncio.gather(esp.beacon_loop(), esp.status_loop())
    finally:
        await esp.stop()


def main():
    parser = argparse.ArgumentParser(description="Mock ESP32 quadcopter")
    parser.add_argument("--ip", default="127.0.0.1", help="Address announced in the beacon")
    parser.add_argument("--ws-port", type=int, default=81, help="Control WebSocket port (default: 81)")
    parser.add_argument("--beacon-port", type=int, default=4210, help="Discovery UDP port (default: 4210)")
    parser.add_argument("--broadcast", default="255.255.255.255", help="Beacon destination address")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between beacons")
    args = parser.parse_args()

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nStopping mock ESP32...")
        print("Done.")


if __name__ == "__main__":
    main()
