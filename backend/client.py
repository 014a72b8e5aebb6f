import asyncio
from typing import Optional

from calibration import CalibrationStore, CalibrationValues, send_calibration, set_field
from channel import ConnectionState, ControlChannel
from config import CONTROL_PORT, DISCOVERY_PORT
from controller import FlightController
from discovery import DiscoveryListener, SimulatedBeaconSocket, UdpBeaconSocket
from transport import SimulatedTransport, WebSocketTransport


class DroneClient:
    """Discovery -> control channel -> flight controller, with one lifecycle.

    `test_mode` only swaps the two network primitives for their
    simulated counterparts; everything above them is the same code.
    """

    def __init__(self, storage, test_mode: bool = False,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 beacon_socket_factory=None, transport_factory=None,
                 discovery_port: int = DISCOVERY_PORT, control_port: int = CONTROL_PORT):
        self.test_mode = test_mode
        if beacon_socket_factory is None:
            beacon_socket_factory = SimulatedBeaconSocket if test_mode else UdpBeaconSocket
        if transport_factory is None:
            transport_factory = SimulatedTransport if test_mode else WebSocketTransport

        self.discovery_port = discovery_port
        self.discovery = DiscoveryListener(beacon_socket_factory, loop)
        self.channel = ControlChannel(transport_factory, loop, port=control_port)
        self.controller = FlightController(self.channel, loop)
        self.calibration_store = CalibrationStore(storage)
        self.calibration = CalibrationValues()
        self.running = False

    async def start(self) -> bool:
        """Load calibration and start listening. False if discovery could not bind."""
        self.set_calibration(self.calibration_store.load())
        self.running = True
        return await self.discovery.start(self.discovery_port, self._on_detected)

    def stop(self):
        if not self.running:
            return
        self.running = False
        # Fail-safe frame must leave before the channel goes away
        self.controller.teardown()
        self.channel.close()
        self.discovery.stop()

    def connect(self, address: str):
        self.channel.connect(address)

    def reconnect(self) -> bool:
        return self.channel.reconnect()

    def _on_detected(self, ip: str, mac: str):
        busy = self.channel.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING)
        if ip == self.channel.address and busy:
            return
        self.channel.connect(ip)

    # --- Calibration ---

    def set_calibration(self, calib: CalibrationValues):
        self.calibration = calib
        self.channel.calibration = calib
        self.controller.apply_calibration(calib)

    def update_calibration_field(self, path: str, value):
        return set_field(self.calibration, path, value)

    def save_calibration(self) -> bool:
        saved = self.calibration_store.save(self.calibration)
        self.send_calibration()
        return saved

    def reset_calibration(self):
        self.set_calibration(CalibrationValues())

    def send_calibration(self) -> bool:
        return send_calibration(self.channel, self.calibration)

    def get_status(self) -> dict:
        return {
            "test_mode": self.test_mode,
            "discovery": self.discovery.get_status(),
            "connection": self.channel.get_status(),
            "flight": self.controller.get_status(),
        }
