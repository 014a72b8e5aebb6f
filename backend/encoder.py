import json
import math
from enum import Enum

from config import SPEED_MAX, SPEED_MIN


class MotorId(str, Enum):
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"


MOTOR_ORDER = (MotorId.A1, MotorId.A2, MotorId.B1, MotorId.B2)

# motor -> (line1, line2, polarity) used by the dpad loop and per-motor tuning
MOTOR_LINES = {
    MotorId.A1: ("A1_IN1", "A1_IN2", 1),
    MotorId.A2: ("A2_IN1", "A2_IN2", 1),
    MotorId.B1: ("B1_IN1", "B1_IN2", 1),
    MotorId.B2: ("B2_IN1", "B2_IN2", 1),
}

# Unified power mode: A1 drives line1, the other three drive line2.
# Matches the hardware wiring, keep as is.
UNIFIED_POLARITY = {
    MotorId.A1: 1,
    MotorId.A2: -1,
    MotorId.B1: -1,
    MotorId.B2: -1,
}

LINE_NAMES = tuple(name for m in MOTOR_ORDER for name in MOTOR_LINES[m][:2])

CALIBRATION_PREFIX = "CALIB:"


def to_number(value) -> float:
    """Coerce user/remote input to a finite float; anything else is 0."""
    if isinstance(value, bool):
        return float(value)
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v) or math.isinf(v):
        return 0.0
    return v


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_speed(value, low: int = SPEED_MIN, high: int = SPEED_MAX) -> int:
    """Clamp to [low, high] and round to the nearest integer."""
    v = round_half_up(to_number(value))
    return max(low, min(high, v))


def clamp_speeds(speeds: dict) -> dict:
    return {motor: clamp_speed(speed) for motor, speed in speeds.items()}


def motor_id(value) -> MotorId:
    """Accept a MotorId or its name ("a1", "A1"). Raises ValueError otherwise."""
    if isinstance(value, MotorId):
        return value
    return MotorId(str(value).upper())


def encode_motor_line(motor, value, polarity: int = None) -> list[str]:
    """Encode a signed speed for one motor as its two line tokens.

    The polarity-adjusted value is clamped to [-255, 255]. A positive
    value drives line1, a negative one drives line2 with its magnitude,
    zero releases both.
    """
    motor = motor_id(motor)
    line1, line2, default_polarity = MOTOR_LINES[motor]
    if polarity is None:
        polarity = default_polarity
    v = clamp_speed(to_number(value) * polarity, -SPEED_MAX, SPEED_MAX)
    if v > 0:
        return [f"{line1}:{v}", f"{line2}:0"]
    if v < 0:
        return [f"{line1}:0", f"{line2}:{abs(v)}"]
    return [f"{line1}:0", f"{line2}:0"]


def mix_quadrotor_x(throttle, pitch, roll, yaw) -> dict:
    """Standard X-configuration mixer.

    A1 front-left, A2 front-right, B1 back-left, B2 back-right.
    """
    t = to_number(throttle)
    p = to_number(pitch)
    r = to_number(roll)
    y = to_number(yaw)
    return {
        MotorId.A1: t + p + r + y,
        MotorId.A2: t + p - r - y,
        MotorId.B1: t - p + r - y,
        MotorId.B2: t - p - r + y,
    }


def encode_speeds(speeds: dict) -> list[str]:
    """Encode clamped per-motor speeds as 8 tokens, A1..B2, line1 then line2."""
    tokens = []
    for motor in MOTOR_ORDER:
        tokens.extend(encode_motor_line(motor, clamp_speed(speeds.get(motor, 0))))
    return tokens


def encode_unified(value) -> list[str]:
    v = clamp_speed(value)
    tokens = []
    for motor in MOTOR_ORDER:
        tokens.extend(encode_motor_line(motor, v, polarity=UNIFIED_POLARITY[motor]))
    return tokens


def encode_stop() -> list[str]:
    return [f"{name}:0" for name in LINE_NAMES]


def encode_calibration(calib) -> str:
    payload = calib.to_dict() if hasattr(calib, "to_dict") else calib
    return CALIBRATION_PREFIX + json.dumps(payload, separators=(",", ":"))
