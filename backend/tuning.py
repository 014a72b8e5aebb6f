"""Per-motor and unified-power tuning surfaces.

Both coalesce rapid edits (slider drags, +/- taps): only the last value
is sent, DEBOUNCE_DELAY after the most recent edit. Each motor has its
own debounce timer, independent of the dispatch loop cadence.
"""

import asyncio
from typing import Optional

from config import DEBOUNCE_DELAY, SPEED_MAX, SPEED_MIN
from dispatch import send_tokens
from encoder import MOTOR_ORDER, clamp_speed, encode_motor_line, encode_stop, encode_unified, motor_id


class _Debouncer:
    def __init__(self, loop=None, delay: float = DEBOUNCE_DELAY):
        self._loop = loop
        self._delay = delay
        self._timers: dict = {}

    @property
    def loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, key, callback, *args):
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._timers[key] = self.loop.call_later(self._delay, self._fire, key, callback, args)

    def _fire(self, key, callback, args):
        self._timers.pop(key, None)
        callback(*args)

    def pending(self) -> list:
        return list(self._timers)

    def cancel(self):
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


class MotorTuner:
    """Individual motor control, each value in [-255, 255]."""

    def __init__(self, channel, loop: Optional[asyncio.AbstractEventLoop] = None,
                 delay: float = DEBOUNCE_DELAY):
        self._channel = channel
        self._debouncer = _Debouncer(loop, delay)
        self.values = {motor: 0 for motor in MOTOR_ORDER}

    def set_value(self, motor, value) -> int:
        motor = motor_id(motor)
        v = clamp_speed(value, -SPEED_MAX, SPEED_MAX)
        self.values[motor] = v
        self._debouncer.schedule(motor, self._send, motor, v)
        return v

    def increment(self, motor, step: int = 1) -> int:
        motor = motor_id(motor)
        return self.set_value(motor, self.values[motor] + step)

    def decrement(self, motor, step: int = 1) -> int:
        motor = motor_id(motor)
        return self.set_value(motor, self.values[motor] - step)

    def stop_motor(self, motor) -> int:
        return self.set_value(motor, 0)

    def stop_all(self):
        """Zero every motor right away, dropping any pending edit."""
        self.cancel()
        for motor in MOTOR_ORDER:
            self.values[motor] = 0
        send_tokens(self._channel, encode_stop())

    def pending(self) -> list:
        return self._debouncer.pending()

    def cancel(self):
        self._debouncer.cancel()

    def _send(self, motor, value: int):
        send_tokens(self._channel, encode_motor_line(motor, value))

    def to_dict(self) -> dict:
        return {motor.value: value for motor, value in self.values.items()}


class UnifiedTuner:
    """All four motors driven by one power value in [0, 255]."""

    def __init__(self, channel, loop: Optional[asyncio.AbstractEventLoop] = None,
                 delay: float = DEBOUNCE_DELAY):
        self._channel = channel
        self._debouncer = _Debouncer(loop, delay)
        self.value = 0

    def set_value(self, value) -> int:
        self.value = clamp_speed(value, SPEED_MIN, SPEED_MAX)
        self._debouncer.schedule("unified", self._send, self.value)
        return self.value

    def increment(self, step: int = 1) -> int:
        return self.set_value(self.value + step)

    def decrement(self, step: int = 1) -> int:
        return self.set_value(self.value - step)

    def stop(self) -> int:
        return self.set_value(0)

    def reset(self):
        self.cancel()
        self.value = 0
        send_tokens(self._channel, encode_stop())

    def pending(self) -> list:
        return self._debouncer.pending()

    def cancel(self):
        self._debouncer.cancel()

    def _send(self, value: int):
        send_tokens(self._channel, encode_unified(value))
