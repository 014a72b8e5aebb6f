"""Tunable flight constants and their transfer to the vehicle.

The JSON layout (camelCase keys) is shared by the settings file and the
`CALIB:` wire command, so the firmware and the app read the same shape.
"""

import json
from dataclasses import dataclass, field, replace

from encoder import encode_calibration, round_half_up, to_number

STORAGE_KEY = "drone_calibration"


@dataclass
class PIDGains:
    kp: float = 0.0
    ki: float = 0.0
    kd: float = 0.0

    def to_dict(self) -> dict:
        return {"kp": self.kp, "ki": self.ki, "kd": self.kd}


@dataclass
class MovementForce:
    pitch: int = 80
    roll: int = 80
    yaw: int = 100
    throttle_step: int = 10

    def to_dict(self) -> dict:
        return {
            "pitch": self.pitch,
            "roll": self.roll,
            "yaw": self.yaw,
            "throttleStep": self.throttle_step,
        }


@dataclass
class CalibrationValues:
    pitch_pid: PIDGains = field(default_factory=lambda: PIDGains(1.5, 0.0, 0.8))
    roll_pid: PIDGains = field(default_factory=lambda: PIDGains(1.5, 0.0, 0.8))
    yaw_pid: PIDGains = field(default_factory=lambda: PIDGains(1.0, 0.0, 0.3))
    min_throttle: int = 130
    max_throttle: int = 255
    base_throttle: int = 170
    movement_force: MovementForce = field(default_factory=MovementForce)
    alpha: float = 0.96
    takeoff_duration: int = 2000  # ms

    def to_dict(self) -> dict:
        return {
            "pitchPID": self.pitch_pid.to_dict(),
            "rollPID": self.roll_pid.to_dict(),
            "yawPID": self.yaw_pid.to_dict(),
            "minThrottle": self.min_throttle,
            "maxThrottle": self.max_throttle,
            "baseThrottle": self.base_throttle,
            "movementForce": self.movement_force.to_dict(),
            "alpha": self.alpha,
            "takeoffDuration": self.takeoff_duration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CalibrationValues":
        """Build from the camelCase layout. Missing entries keep their defaults."""
        calib = cls()
        if not isinstance(data, dict):
            return calib
        for path in FIELD_PATHS:
            head, _, tail = path.partition(".")
            value = data.get(head)
            if tail:
                value = value.get(tail) if isinstance(value, dict) else None
            if value is not None:
                set_field(calib, path, value)
        return calib

    def copy(self) -> "CalibrationValues":
        return replace(
            self,
            pitch_pid=replace(self.pitch_pid),
            roll_pid=replace(self.roll_pid),
            yaw_pid=replace(self.yaw_pid),
            movement_force=replace(self.movement_force),
        )


# camelCase path -> (dataclass attribute chain, is integer)
_FIELD_MAP = {
    "pitchPID.kp": (("pitch_pid", "kp"), False),
    "pitchPID.ki": (("pitch_pid", "ki"), False),
    "pitchPID.kd": (("pitch_pid", "kd"), False),
    "rollPID.kp": (("roll_pid", "kp"), False),
    "rollPID.ki": (("roll_pid", "ki"), False),
    "rollPID.kd": (("roll_pid", "kd"), False),
    "yawPID.kp": (("yaw_pid", "kp"), False),
    "yawPID.ki": (("yaw_pid", "ki"), False),
    "yawPID.kd": (("yaw_pid", "kd"), False),
    "minThrottle": (("min_throttle",), True),
    "maxThrottle": (("max_throttle",), True),
    "baseThrottle": (("base_throttle",), True),
    "movementForce.pitch": (("movement_force", "pitch"), True),
    "movementForce.roll": (("movement_force", "roll"), True),
    "movementForce.yaw": (("movement_force", "yaw"), True),
    "movementForce.throttleStep": (("movement_force", "throttle_step"), True),
    "alpha": (("alpha",), False),
    "takeoffDuration": (("takeoff_duration",), True),
}

FIELD_PATHS = tuple(_FIELD_MAP)


def set_field(calib: CalibrationValues, path: str, value):
    """Edit one field by its dotted camelCase path.

    Text that does not parse as a number becomes 0, like an emptied
    input box. Raises KeyError for unknown paths.
    """
    attrs, is_int = _FIELD_MAP[path]
    number = to_number(value)
    number = round_half_up(number) if is_int else number
    target = calib
    for name in attrs[:-1]:
        target = getattr(target, name)
    setattr(target, attrs[-1], number)
    return number


def get_field(calib: CalibrationValues, path: str):
    attrs, _ = _FIELD_MAP[path]
    target = calib
    for name in attrs:
        target = getattr(target, name)
    return target


class CalibrationStore:
    """Load/save calibration through a get/set key-value storage."""

    def __init__(self, storage, key: str = STORAGE_KEY):
        self._storage = storage
        self._key = key

    def load(self) -> CalibrationValues:
        try:
            raw = self._storage.get(self._key)
        except OSError as e:
            print(f"[Calibration] Error reading storage: {e}")
            return CalibrationValues()
        if not raw:
            return CalibrationValues()
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            print(f"[Calibration] Stored calibration is corrupt, using defaults: {e}")
            return CalibrationValues()
        calib = CalibrationValues.from_dict(data)
        print("[Calibration] Loaded calibration from storage")
        return calib

    def save(self, calib: CalibrationValues) -> bool:
        try:
            self._storage.set(self._key, json.dumps(calib.to_dict()))
        except (OSError, TypeError, ValueError) as e:
            print(f"[Calibration] Error saving calibration: {e}")
            return False
        print("[Calibration] Calibration saved")
        return True


def send_calibration(channel, calib) -> bool:
    """Send one CALIB token. No-op unless the channel is connected and calib is set."""
    if calib is None or not channel.connected:
        return False
    return channel.send(encode_calibration(calib))

