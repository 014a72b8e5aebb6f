import asyncio
import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from pydantic import BaseModel

from calibration import CalibrationValues, get_field
from client import DroneClient
from config import SETTINGS_PATH, TEST_MODE
from encoder import motor_id
from storage import JsonFileStorage


# --- Settings ---

storage = JsonFileStorage(SETTINGS_PATH)


def load_test_mode() -> bool:
    return storage.get_flag("test_mode", TEST_MODE)


# --- Models ---

class ConnectRequest(BaseModel):
    address: str


class ThrottleRequest(BaseModel):
    delta: float = 0


class ThrottleStepRequest(BaseModel):
    direction: int = 1  # +1 up, -1 down


class DirectionRequest(BaseModel):
    direction: str  # forward | backward | left | right


class AxisRequest(BaseModel):
    axis: str  # pitch | roll (a direction name is accepted too)


class YawRequest(BaseModel):
    direction: str  # left | right


class TakeoffRequest(BaseModel):
    confirm: bool = False


class MotorRequest(BaseModel):
    value: Optional[float] = None
    step: Optional[int] = None  # +n / -n relative edit
    stop: bool = False


class CalibrationFieldRequest(BaseModel):
    path: str     # e.g. "pitchPID.kp"
    value: str    # raw input text, non-numeric becomes 0


class TestModeRequest(BaseModel):
    enabled: bool


# --- Drone client ---

drone_client: Optional[DroneClient] = None


def get_client() -> DroneClient:
    if drone_client is None:
        raise HTTPException(503, "Drone client not running")
    return drone_client


async def start_client(test_mode: bool) -> DroneClient:
    global drone_client
    client = DroneClient(storage, test_mode=test_mode)
    client.channel.on_message = lambda text: print(f"[ESP32] {text}")
    await client.start()
    drone_client = client
    return client


def stop_client():
    global drone_client
    if drone_client is not None:
        drone_client.stop()
        drone_client = None


# --- WebSocket Manager ---

class ConnectionManager:
    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, data: dict):
        if not self.active_connections:
            return
        message = json.dumps(data)

        async def send_to(ws):
            try:
                await ws.send_text(message)
                return None
            except (WebSocketDisconnect, RuntimeError, OSError):
                return ws
        results = await asyncio.gather(*[send_to(ws) for ws in self.active_connections])
        for ws in results:
            if ws is not None:
                self.disconnect(ws)


ws_manager = ConnectionManager()


# --- Status broadcast task ---

async def status_broadcast():
    """Push client status to UI sockets when it changes, full sync every 5s."""
    FULL_SYNC_INTERVAL = 5.0
    last_sent = None
    last_full_sync = 0.0

    while True:
        now = asyncio.get_running_loop().time()
        if ws_manager.active_connections and drone_client is not None:
            status = drone_client.get_status()
            force_full = (now - last_full_sync) >= FULL_SYNC_INTERVAL
            if status != last_sent or force_full:
                message = dict(status)
                message["type"] = "status"
                await ws_manager.broadcast(message)
                last_sent = status
                if force_full:
                    last_full_sync = now
        await asyncio.sleep(0.2)


# --- App lifecycle ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    await start_client(load_test_mode())
    task = asyncio.create_task(status_broadcast())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    stop_client()


# --- FastAPI App ---

app = FastAPI(title="ESP32 Drone Remote", lifespan=lifespan)


# --- Connection ---

@app.get("/api/status")
async def api_status():
    return {"status": "ok", **get_client().get_status()}


@app.post("/api/connect")
async def api_connect(req: ConnectRequest):
    client = get_client()
    client.connect(req.address.strip())
    return {"status": "ok", "connection": client.channel.get_status()}


@app.post("/api/reconnect")
async def api_reconnect():
    client = get_client()
    if not client.reconnect():
        return {"status": "error", "error": "No vehicle address known yet"}
    return {"status": "ok", "connection": client.channel.get_status()}


# --- Directional control ---

@app.post("/api/throttle")
async def api_throttle(req: ThrottleRequest):
    state = get_client().controller.change_throttle(req.delta)
    return {"status": "ok", "movement": state.to_dict()}


@app.post("/api/throttle/step")
async def api_throttle_step(req: ThrottleStepRequest):
    state = get_client().controller.step_throttle(req.direction)
    return {"status": "ok", "movement": state.to_dict()}


@app.post("/api/throttle/reset")
async def api_throttle_reset():
    state = get_client().controller.reset_throttle()
    return {"status": "ok", "movement": state.to_dict()}


@app.post("/api/direction/press")
async def api_direction_press(req: DirectionRequest):
    try:
        state = get_client().controller.press_direction(req.direction)
    except KeyError:
        return {"status": "error", "error": f"Unknown direction: {req.direction}"}
    return {"status": "ok", "movement": state.to_dict()}


@app.post("/api/direction/release")
async def api_direction_release(req: AxisRequest):
    try:
        state = get_client().controller.release_direction(req.axis)
    except KeyError:
        return {"status": "error", "error": f"Unknown axis: {req.axis}"}
    return {"status": "ok", "movement": state.to_dict()}


@app.post("/api/yaw/press")
async def api_yaw_press(req: YawRequest):
    try:
        state = get_client().controller.press_yaw(req.direction)
    except KeyError:
        return {"status": "error", "error": f"Unknown yaw direction: {req.direction}"}
    return {"status": "ok", "movement": state.to_dict()}


@app.post("/api/yaw/release")
async def api_yaw_release():
    state = get_client().controller.release_yaw()
    return {"status": "ok", "movement": state.to_dict()}


# --- Flight actions ---

@app.post("/api/takeoff")
async def api_takeoff(req: TakeoffRequest):
    controller = get_client().controller
    if not controller.takeoff(confirm=req.confirm):
        return {
            "status": "confirm_required",
            "warning": "Takeoff spins all motors up. Please confirm.",
        }
    return {"status": "ok", "command": "takeoff", "movement": controller.pilot.snapshot().to_dict()}


@app.post("/api/land")
async def api_land():
    get_client().controller.land()
    return {"status": "ok", "command": "land"}


@app.post("/api/emergency-stop")
async def api_emergency_stop():
    get_client().controller.emergency_stop()
    return {"status": "ok", "command": "emergency_stop"}


# --- Motor tuning ---

@app.post("/api/motors/stop")
async def api_motors_stop():
    motors = get_client().controller.motors
    motors.stop_all()
    return {"status": "ok", "motors": motors.to_dict()}


@app.post("/api/motors/{motor}")
async def api_motor(motor: str, req: MotorRequest):
    motors = get_client().controller.motors
    try:
        mid = motor_id(motor)
    except ValueError:
        raise HTTPException(404, f"Motor '{motor}' not found")
    if req.stop:
        motors.stop_motor(mid)
    elif req.step is not None:
        motors.increment(mid, req.step)
    elif req.value is not None:
        motors.set_value(mid, req.value)
    return {"status": "ok", "motors": motors.to_dict()}


@app.post("/api/unified")
async def api_unified(req: MotorRequest):
    unified = get_client().controller.unified
    if req.stop:
        unified.stop()
    elif req.step is not None:
        unified.increment(req.step)
    elif req.value is not None:
        unified.set_value(req.value)
    return {"status": "ok", "value": unified.value}


@app.post("/api/unified/reset")
async def api_unified_reset():
    unified = get_client().controller.unified
    unified.reset()
    return {"status": "ok", "value": unified.value}


# --- Calibration ---

@app.get("/api/calibration")
async def api_calibration():
    return {"status": "ok", "calibration": get_client().calibration.to_dict()}


@app.post("/api/calibration/field")
async def api_calibration_field(req: CalibrationFieldRequest):
    client = get_client()
    try:
        client.update_calibration_field(req.path, req.value)
    except KeyError:
        raise HTTPException(404, f"Calibration field '{req.path}' not found")
    return {
        "status": "ok",
        "path": req.path,
        "value": get_field(client.calibration, req.path),
        "calibration": client.calibration.to_dict(),
    }


@app.put("/api/calibration")
async def api_calibration_replace(data: dict):
    client = get_client()
    client.set_calibration(CalibrationValues.from_dict(data))
    saved = client.save_calibration()
    if not saved:
        return {"status": "error", "error": "Could not save calibration"}
    return {"status": "ok", "calibration": client.calibration.to_dict()}


@app.post("/api/calibration/save")
async def api_calibration_save():
    client = get_client()
    if not client.save_calibration():
        return {"status": "error", "error": "Could not save calibration"}
    return {"status": "ok", "sent": client.channel.connected}


@app.post("/api/calibration/reset")
async def api_calibration_reset():
    client = get_client()
    client.reset_calibration()
    return {"status": "ok", "calibration": client.calibration.to_dict()}


@app.post("/api/calibration/send")
async def api_calibration_send():
    if not get_client().send_calibration():
        return {"status": "error", "error": "Not connected"}
    return {"status": "ok", "command": "calibration"}


# --- Settings ---

@app.get("/api/settings/test-mode")
async def api_test_mode():
    return {"status": "ok", "enabled": get_client().test_mode}


@app.post("/api/settings/test-mode")
async def api_test_mode_set(req: TestModeRequest):
    try:
        storage.set_flag("test_mode", req.enabled)
    except OSError as e:
        print(f"[Settings] Error saving test mode: {e}")
    stop_client()
    client = await start_client(req.enabled)
    return {"status": "ok", "enabled": client.test_mode}


# --- WebSocket ---

def handle_control_event(msg: dict):
    """Low-latency control events from the UI socket. Unknown input is ignored."""
    if drone_client is None:
        return
    controller = drone_client.controller
    kind = msg.get("type")
    try:
        if kind == "direction_press":
            controller.press_direction(msg.get("direction"))
        elif kind == "direction_release":
            controller.release_direction(msg.get("axis") or msg.get("direction"))
        elif kind == "yaw_press":
            controller.press_yaw(msg.get("direction"))
        elif kind == "yaw_release":
            controller.release_yaw()
        elif kind == "throttle_step":
            controller.step_throttle(1 if msg.get("direction", 1) > 0 else -1)
        elif kind == "motor":
            controller.motors.set_value(msg.get("motor"), msg.get("value", 0))
        elif kind == "unified":
            controller.unified.set_value(msg.get("value", 0))
    except (KeyError, ValueError, TypeError) as e:
        print(f"[WS] Ignoring bad control event {msg}: {e}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict):
                handle_control_event(msg)
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)

