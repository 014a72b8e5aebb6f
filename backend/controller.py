import asyncio
from typing import Optional

from config import TAKEOFF_THROTTLE
from dispatch import DispatchLoop
from pilot import PilotInput
from tuning import MotorTuner, UnifiedTuner


class FlightController:
    """Pilot-facing actions on top of the channel.

    Owns the pilot input, the dpad dispatch loop and both tuning
    surfaces. Every stop path cancels all pending timers before the
    all-zero frame goes out, so nothing scheduled earlier can follow it.
    """

    def __init__(self, channel, loop: Optional[asyncio.AbstractEventLoop] = None,
                 force=None, takeoff_throttle: int = TAKEOFF_THROTTLE):
        self.channel = channel
        self.pilot = PilotInput(force)
        self.dispatch = DispatchLoop(channel, self.pilot, loop)
        self.motors = MotorTuner(channel, loop)
        self.unified = UnifiedTuner(channel, loop)
        self.takeoff_throttle = takeoff_throttle

    def apply_calibration(self, calib):
        self.pilot.force = calib.movement_force

    # --- Directional control ---

    def press_direction(self, direction: str):
        state = self.pilot.press_direction(direction)
        self.dispatch.arm()
        return state

    def release_direction(self, axis: str):
        return self.pilot.release_direction(axis)

    def press_yaw(self, direction: str):
        state = self.pilot.press_yaw(direction)
        self.dispatch.arm()
        return state

    def release_yaw(self):
        return self.pilot.release_yaw()

    def change_throttle(self, delta):
        return self.pilot.change_throttle(delta)

    def step_throttle(self, direction: int):
        return self.pilot.step_throttle(direction)

    def reset_throttle(self):
        return self.pilot.reset_throttle()

    # --- Flight actions ---

    def takeoff(self, confirm: bool = False) -> bool:
        """Requires explicit confirmation; returns False and does nothing otherwise."""
        if not confirm:
            return False
        self.pilot.takeoff(self.takeoff_throttle)
        self.dispatch.arm()
        print(f"[Flight] Takeoff at throttle {self.takeoff_throttle}")
        return True

    def land(self):
        self._stop_all()
        print("[Flight] Landed")

    def emergency_stop(self):
        self._stop_all()
        print("[Flight] EMERGENCY STOP")

    def teardown(self):
        """Unmount/shutdown: same guarantees as an emergency stop, quieter."""
        self._stop_all()

    def _stop_all(self):
        self._cancel_all()
        self.pilot.reset()
        self.motors.values = {motor: 0 for motor in self.motors.values}
        self.unified.value = 0
        self.dispatch.send_stop()

    def _cancel_all(self):
        self.dispatch.disarm()
        self.motors.cancel()
        self.unified.cancel()

    def get_status(self) -> dict:
        return {
            "armed": self.dispatch.armed,
            "movement": self.pilot.snapshot().to_dict(),
            "motor_speeds": {m.value: v for m, v in self.dispatch.last_speeds.items()},
            "motors": self.motors.to_dict(),
            "unified": self.unified.value,
        }
