import asyncio
from typing import Optional

from config import DISPATCH_INTERVAL
from encoder import MOTOR_ORDER, clamp_speeds, encode_speeds, encode_stop, mix_quadrotor_x


def send_tokens(channel, tokens: list[str]) -> bool:
    """Send a batch of tokens; False if any of them was dropped."""
    if not channel.connected:
        print(f"[Dispatch] Not connected, dropping {len(tokens)} commands")
        return False
    ok = True
    for token in tokens:
        ok = channel.send(token) and ok
    return ok


class DispatchLoop:
    """Fixed-period sender for the directional (dpad) control surface.

    While armed, every tick mixes one snapshot of the pilot input into
    four motor speeds and pushes the 8 line tokens through the channel.
    """

    def __init__(self, channel, pilot, loop: Optional[asyncio.AbstractEventLoop] = None,
                 interval: float = DISPATCH_INTERVAL):
        self._channel = channel
        self._pilot = pilot
        self._loop = loop
        self._interval = interval
        self._timer = None
        self.last_speeds: dict = {}

    @property
    def loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self):
        if self._timer is not None:
            return
        print("[Dispatch] Armed")
        self._timer = self.loop.call_later(self._interval, self._tick)

    def disarm(self):
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        print("[Dispatch] Disarmed")

    def send_stop(self) -> bool:
        """Fail-safe: all 8 lines to zero, whatever the loop is doing."""
        self.last_speeds = {motor: 0 for motor in MOTOR_ORDER}
        return send_tokens(self._channel, encode_stop())

    def _tick(self):
        self._timer = self.loop.call_later(self._interval, self._tick)
        if not self._channel.connected:
            return
        state = self._pilot.snapshot()
        speeds = clamp_speeds(mix_quadrotor_x(state.throttle, state.pitch, state.roll, state.yaw))
        self.last_speeds = speeds
        send_tokens(self._channel, encode_speeds(speeds))
