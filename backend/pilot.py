from dataclasses import dataclass, replace
from typing import Optional

from calibration import MovementForce
from config import SPEED_MAX, SPEED_MIN
from encoder import clamp_speed, to_number

# direction -> (axis, sign)
DIRECTIONS = {
    "forward": ("pitch", 1),
    "backward": ("pitch", -1),
    "left": ("roll", -1),
    "right": ("roll", 1),
}
YAW_DIRECTIONS = {"left": -1, "right": 1}


@dataclass(frozen=True)
class MovementState:
    throttle: int = 0
    pitch: int = 0
    roll: int = 0
    yaw: int = 0

    def to_dict(self) -> dict:
        return {
            "throttle": self.throttle,
            "pitch": self.pitch,
            "roll": self.roll,
            "yaw": self.yaw,
        }


class PilotInput:
    """Live pilot input, mutated by discrete UI events.

    The state is an immutable MovementState that is swapped on every
    event, so a reader holding a snapshot never sees a half-applied edit.
    """

    def __init__(self, force: Optional[MovementForce] = None):
        self.force = force or MovementForce()
        self._state = MovementState()

    def snapshot(self) -> MovementState:
        return self._state

    def _update(self, **changes) -> MovementState:
        self._state = replace(self._state, **changes)
        return self._state

    def press_direction(self, direction: str) -> MovementState:
        axis, sign = DIRECTIONS[direction]
        magnitude = self.force.pitch if axis == "pitch" else self.force.roll
        return self._update(**{axis: clamp_speed(sign * magnitude, -SPEED_MAX, SPEED_MAX)})

    def release_direction(self, axis: str) -> MovementState:
        """Reset one axis. Accepts "pitch"/"roll" or a direction name."""
        if axis in DIRECTIONS:
            axis = DIRECTIONS[axis][0]
        if axis not in ("pitch", "roll"):
            raise KeyError(axis)
        return self._update(**{axis: 0})

    def press_yaw(self, direction: str) -> MovementState:
        sign = YAW_DIRECTIONS[direction]
        return self._update(yaw=clamp_speed(sign * self.force.yaw, -SPEED_MAX, SPEED_MAX))

    def release_yaw(self) -> MovementState:
        return self._update(yaw=0)

    def change_throttle(self, delta) -> MovementState:
        throttle = clamp_speed(self._state.throttle + to_number(delta), SPEED_MIN, SPEED_MAX)
        return self._update(throttle=throttle)

    def step_throttle(self, direction: int) -> MovementState:
        """Move throttle one configured step up (direction > 0) or down."""
        step = self.force.throttle_step if direction > 0 else -self.force.throttle_step
        return self.change_throttle(step)

    def reset_throttle(self) -> MovementState:
        return self._update(throttle=0)

    def takeoff(self, throttle: int) -> MovementState:
        self._state = MovementState(throttle=clamp_speed(throttle))
        return self._state

    def reset(self) -> MovementState:
        self._state = MovementState()
        return self._state
