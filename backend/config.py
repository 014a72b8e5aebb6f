import os


# --- Discovery ---

DISCOVERY_PORT = int(os.environ.get("ESPDRONE_DISCOVERY_PORT", 4210))
BEACON_PREFIX = "ESP32|"

# --- Control channel ---

CONTROL_PORT = int(os.environ.get("ESPDRONE_CONTROL_PORT", 81))
GREETING = "hello"
NORMAL_CLOSE_CODE = 1000    # intentional teardown, never retried
ABNORMAL_CLOSE_CODE = 1006  # reported when the link dies without a close frame
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_STEP = 1.0        # seconds added per attempt
RECONNECT_MAX_DELAY = 5.0
CALIBRATION_SETTLE_DELAY = 0.5

# --- Command cadence ---

DISPATCH_INTERVAL = 0.1  # 10 Hz while armed
DEBOUNCE_DELAY = 0.1     # per-motor tuning edits

# --- Motors ---

SPEED_MIN = 0
SPEED_MAX = 255
TAKEOFF_THROTTLE = 120

# --- Test mode ---

SIMULATED_IP = "192.168.1.100"
SIMULATED_MAC = "00:00:00:00:00:00"
SIMULATED_DETECTION_DELAY = 2.0


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SETTINGS_PATH = os.environ.get(
    "ESPDRONE_SETTINGS",
    os.path.join(os.path.dirname(__file__), "settings.json"),
)
TEST_MODE = _env_flag("ESPDRONE_TEST_MODE")
