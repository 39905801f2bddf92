import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from queue import Queue, Empty
from typing import Any

from dateutil import parser as dtparser
from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .actuators import ActuatorStateManager
from .broadcaster import Broadcaster
from .config_store import ConfigStore
from .db import init_db, make_engine
from .errors import InvalidConfig, InvalidState, MalformedPayload, StorageError
from .models import Source, TelemetryRecord, as_utc
from .mqtt_handler import MqttTransport
from .pipeline import TelemetryPipeline
from .relay import CommandRelay, DeviceTransportState
from .schemas import PinCommand, PinResponse, StatusOut, UploadOut, UploadPage, UploadResponse
from .settings import Settings, settings
from .store import RecordStore
from .utils import add_cors, add_request_logging

log = logging.getLogger("api")

app = FastAPI(title="ESP Receiver", version="0.1.0")
add_cors(app)
add_request_logging(app)

# events raised on worker threads (HTTP handlers, paho, relay) wait here for the loop
message_queue: Queue[tuple[str, Any]] = Queue()

@dataclass
class Services:
    engine: Any
    store: RecordStore
    config_store: ConfigStore
    transport_state: DeviceTransportState
    mqtt: MqttTransport
    relay: CommandRelay
    actuators: ActuatorStateManager
    pipeline: TelemetryPipeline
    broadcaster: Broadcaster

services: Services | None = None
_forwarder: asyncio.Task | None = None

def notify(event: str, data: Any) -> None:
    message_queue.put((event, data))

def build_services(cfg: Settings) -> Services:
    engine = make_engine(cfg.database_url)
    init_db(engine)
    config_store = ConfigStore(cfg.config_path)
    config_store.load()

    transport_state = DeviceTransportState()
    mqtt_transport = MqttTransport(on_telemetry=None, client_id=cfg.mqtt_client_id)
    relay = CommandRelay(
        transport_state,
        mqtt_transport,
        timeout=cfg.relay_timeout_seconds,
    )
    actuators = ActuatorStateManager(engine, config_store, relay, notify=notify)
    store = RecordStore(engine)
    pipeline = TelemetryPipeline(store, config_store, actuators, transport_state, notify=notify)
    mqtt_transport.on_telemetry = pipeline.ingest

    return Services(
        engine=engine,
        store=store,
        config_store=config_store,
        transport_state=transport_state,
        mqtt=mqtt_transport,
        relay=relay,
        actuators=actuators,
        pipeline=pipeline,
        broadcaster=Broadcaster(cfg.subscriber_buffer),
    )

def _svc() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return services

@app.on_event("startup")
async def on_startup():
    global services, _forwarder
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = build_services(settings)
    try:
        services.mqtt.start(services.config_store.get().mqtt)
    except (ValueError, OSError) as e:
        log.error("[MQTT] failed to start: %s", e)
    _forwarder = asyncio.create_task(queue_forwarder())

@app.on_event("shutdown")
async def on_shutdown():
    global services, _forwarder
    if _forwarder is not None:
        _forwarder.cancel()
        _forwarder = None
    if services is not None:
        services.mqtt.stop()
        services.relay.close()
        services.engine.dispose()
        services = None

async def queue_forwarder():
    while True:
        try:
            event, data = message_queue.get_nowait()
        except Empty:
            await asyncio.sleep(0.05)
            continue
        if services is not None:
            services.broadcaster.publish(event, data)

@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    log.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": str(exc)})

def _upload_out(r: TelemetryRecord) -> UploadOut:
    return UploadOut(**r.meta(), data=r.payload)

def _parse_ts(value: str | None, name: str) -> datetime | None:
    if not value:
        return None
    try:
        ts = dtparser.isoparse(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {name} timestamp")
    return as_utc(ts).astimezone(timezone.utc)

@app.get("/", response_class=PlainTextResponse)
def index():
    return "ESP receiver is running. Use /api/latest-data, /api/history, /api/pins, /events."

@app.post("/upload", response_model=UploadResponse)
def upload(payload: Any = Body(...)):
    svc = _svc()
    log.info("Received legacy HTTP upload from ESP.")
    try:
        svc.pipeline.ingest(payload, Source.HTTP)
    except MalformedPayload as e:
        log.warning("Dropped malformed upload: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        log.error("Error handling /upload: %s", e)
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})
    return UploadResponse(status="ok", uploadIntervalSeconds=svc.config_store.get().upload_interval_seconds)

@app.get("/api/config")
def get_config():
    return _svc().config_store.get().wire()

@app.post("/api/config")
def update_config(body: Any = Body(...)):
    svc = _svc()
    try:
        previous, current = svc.config_store.update(body)
    except InvalidConfig as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        log.error("Failed to write config: %s", e)
        raise HTTPException(status_code=500, detail="failed to write config")

    if current.mqtt.enabled:
        if current.mqtt != previous.mqtt:
            try:
                svc.mqtt.restart(current.mqtt)
            except (ValueError, OSError) as e:
                log.error("[MQTT] failed to restart: %s", e)
        svc.relay.publish_config(current.device_payload())
    elif previous.mqtt.enabled:
        svc.mqtt.stop()
    return {"status": "ok", "config": current.wire()}

@app.post("/api/pins/{pin}", response_model=PinResponse)
def set_pin(pin: str, cmd: PinCommand):
    svc = _svc()
    try:
        outcome = svc.actuators.manual_set(pin, cmd.state)
    except InvalidState as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        log.error("[Pin Control] Failed to write pin %s state: %s", pin, e)
        raise HTTPException(status_code=500, detail=f"failed to write pin {pin} state")
    return PinResponse(status="ok", pin=outcome.pin, state=outcome.state, sentToEsp=outcome.sent_to_device)

@app.get("/api/pins")
def get_pins():
    return _svc().actuators.snapshot()

@app.get("/pins.json")
def pins_json():
    return _svc().actuators.snapshot()

@app.get("/api/latest-data")
def latest_data():
    latest = _svc().store.latest()
    if latest is None:
        raise HTTPException(status_code=404, detail="No data available")
    return latest.payload

@app.get("/api/history")
def history(since: str | None = None, until: str | None = None):
    rows = _svc().store.list_all(_parse_ts(since, "since"), _parse_ts(until, "until"))
    return [{"timestamp": r.meta()["time"], **r.payload} for r in rows]

@app.get("/api/uploads", response_model=UploadPage)
def list_uploads(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=500)):
    rows, total = _svc().store.page((page - 1) * limit, limit)
    return UploadPage(items=[_upload_out(r) for r in rows], total=total, page=page, limit=limit)

@app.get("/api/uploads/{record_id}", response_model=UploadOut)
def get_upload(record_id: str):
    r = _svc().store.get(record_id)
    if r is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return _upload_out(r)

@app.delete("/api/uploads/{record_id}")
def delete_upload(record_id: str):
    if not _svc().store.delete(record_id):
        raise HTTPException(status_code=404, detail="Upload not found")
    notify("deleted", {"id": record_id})
    return {"status": "ok", "id": record_id}

@app.delete("/api/uploads")
def delete_all_uploads():
    count = _svc().store.delete_all()
    notify("deleted_all", {"count": count})
    return {"status": "ok", "deleted": count}

@app.get("/api/status", response_model=StatusOut)
def status():
    svc = _svc()
    return StatusOut(
        mqttConnected=svc.mqtt.connected,
        lastKnownDeviceAddress=svc.transport_state.last_known_address,
        subscribers=len(svc.broadcaster),
    )

async def sse_stream(request, broadcaster: Broadcaster, sub, keepalive: float):
    try:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            try:
                event = await sub.next(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield event.to_sse()
    finally:
        broadcaster.unsubscribe(sub)

@app.get("/events")
async def events(request: Request):
    svc = _svc()
    sub = svc.broadcaster.subscribe()
    return StreamingResponse(
        sse_stream(request, svc.broadcaster, sub, settings.sse_keepalive_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )

async def _wait_ws_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return

@app.websocket("/ws/telemetry")
async def telemetry_ws(websocket: WebSocket):
    svc = services
    if svc is None:
        await websocket.close(code=1013)
        return
    sub = svc.broadcaster.subscribe()
    watcher: asyncio.Task | None = None
    pending_event: asyncio.Task | None = None
    try:
        await websocket.accept()
        # a silent dashboard still has to be noticed when it goes away
        watcher = asyncio.create_task(_wait_ws_disconnect(websocket))
        while True:
            pending_event = asyncio.create_task(sub.next())
            done, _ = await asyncio.wait({watcher, pending_event}, return_when=asyncio.FIRST_COMPLETED)
            if watcher in done:
                break
            await websocket.send_text(pending_event.result().to_json())
            pending_event = None
    except WebSocketDisconnect:
        pass
    finally:
        for task in (watcher, pending_event):
            if task is not None and not task.done():
                task.cancel()
        svc.broadcaster.unsubscribe(sub)

def run() -> None:
    import uvicorn

    uvicorn.run("esp_receiver.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())

if __name__ == "__main__":
    run()
