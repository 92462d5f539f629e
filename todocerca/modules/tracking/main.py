"""Tracking service: FastAPI app wiring positions, presence, geofences and fan-out."""

from __future__ import annotations

import asyncio
from datetime import date

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from modules.tracking.alerts import AlertRecorder, AlertTools
from modules.tracking.controller import TrackingManager
from modules.tracking.domain import LocationSnapshot, Position, utcnow
from modules.tracking.errors import TrackingError, Unauthorized, WriteError
from modules.tracking.fanout import LocationFanout, Scope
from modules.tracking.geofence import GroupGeofenceWatch
from modules.tracking.history import fetch_history
from modules.tracking.ingest import HardwareIngest
from modules.tracking.presence import PresenceStore
from modules.tracking.relay import RelayHub
from modules.tracking.sink import PROVIDER_ROLE, LocationSink, WriteThrottle
from modules.tracking.tools import GeofenceTools
from shared.auth import get_actor_id, require_service_auth, verify_ws_auth
from shared.config import get_settings
from shared.database import dispose_engine, get_session_factory
from shared.redis import close_redis, get_redis
from shared.schemas.common import ErrorResponse, HealthResponse
from shared.schemas.tracking import (
    GeofenceIn,
    GeofenceUpdate,
    IngestResult,
    PositionIn,
    PresenceOut,
    PresenceUpdate,
    RelayDeniedIn,
    RelayFixIn,
    SnapshotEntryOut,
    TrackingStartIn,
    TrackingStatusOut,
)

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="TodoCerca Tracking", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

settings = get_settings()
session_factory = None
redis_client = None
presence: PresenceStore | None = None
sink: LocationSink | None = None
relay_hub: RelayHub | None = None
manager: TrackingManager | None = None
fanout: LocationFanout | None = None
ingest: HardwareIngest | None = None
geofence_tools: GeofenceTools | None = None
alert_tools: AlertTools | None = None
geofence_watch: GroupGeofenceWatch | None = None
http_throttle: WriteThrottle | None = None
background_tasks: list[asyncio.Task] = []


def on_permission_denied(subject_id: str) -> None:
    # The device shows its permission guide; this is the one-time trigger.
    logger.warning("permission_guide_requested", subject_id=subject_id)


@app.on_event("startup")
async def startup():
    global session_factory, redis_client, presence, sink, relay_hub, manager
    global fanout, ingest, geofence_tools, alert_tools, http_throttle, geofence_watch
    session_factory = get_session_factory()

    # Change events are best-effort; without Redis the fan-out poll still converges.
    try:
        redis_client = await get_redis()
        await redis_client.ping()
        logger.info("tracking_redis_connected")
    except Exception as e:
        logger.warning("tracking_redis_unavailable", error=str(e))
        redis_client = None

    presence = PresenceStore(session_factory, redis_client, settings)
    sink = LocationSink(session_factory, redis_client, settings)
    relay_hub = RelayHub(timeout=settings.position_timeout_seconds)
    recorder = AlertRecorder(session_factory, redis_client, settings)
    geofence_watch = GroupGeofenceWatch(session_factory, recorder)
    manager = TrackingManager(
        presence,
        sink,
        relay_hub.source_for,
        settings=settings,
        on_permission_denied=on_permission_denied,
        geofences=geofence_watch,
    )
    fanout = LocationFanout(session_factory, presence, redis_client, settings)
    ingest = HardwareIngest(session_factory, sink, recorder, settings)
    geofence_tools = GeofenceTools(session_factory)
    alert_tools = AlertTools(session_factory)
    http_throttle = WriteThrottle(settings.sink_min_write_interval_seconds)

    background_tasks.append(asyncio.create_task(presence.listen()))
    background_tasks.append(asyncio.create_task(fanout.listen()))
    logger.info("tracking_service_ready")


@app.on_event("shutdown")
async def shutdown():
    if manager is not None:
        await manager.shutdown()
    if fanout is not None:
        await fanout.shutdown()
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()
    await close_redis()
    await dispose_engine()
    logger.info("tracking_service_stopped")


# --- Error mapping ---


def _error(status_code: int, exc: Exception, kind: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=str(exc), kind=kind).model_dump(),
    )


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized):
    return _error(403, exc, exc.kind)


@app.exception_handler(WriteError)
async def write_error_handler(request: Request, exc: WriteError):
    return _error(503, exc, exc.kind)


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError):
    return _error(409, exc, exc.kind)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(422, exc, "invalid")


def _ready():
    if presence is None:
        raise HTTPException(status_code=503, detail="Service not ready")


def _result(result: dict) -> dict:
    """Tool helpers report missing rows as ``{"error": ...}``."""
    if "error" in result:
        raise HTTPException(status_code=404, detail=result["error"])
    return result


def _snapshot_out(entry: LocationSnapshot) -> dict:
    return SnapshotEntryOut(
        subject_id=entry.subject_id,
        group_id=entry.group_id,
        latitude=entry.latitude,
        longitude=entry.longitude,
        updated_at=entry.updated_at,
        state=entry.state.value if entry.state else None,
        nickname=entry.nickname,
        is_owner=entry.is_owner,
    ).model_dump(mode="json")


def _scope(scope: str, group_id: str | None) -> Scope:
    if scope == "providers":
        return Scope.providers()
    if scope == "group" and group_id:
        return Scope.group(group_id)
    raise ValueError("scope must be 'providers' or 'group' with a group_id")


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse()


# --- Locations ---


@app.put("/locations/{subject_id}")
async def put_location(subject_id: str, body: PositionIn, _=Depends(require_service_auth)):
    """Direct location write from a device that runs its own tracking loop."""
    _ready()
    position = Position(
        subject_id=subject_id,
        latitude=body.latitude,
        longitude=body.longitude,
        timestamp=body.timestamp or utcnow(),
        group_id=body.group_id,
        accuracy=body.accuracy,
        speed=body.speed,
        course=body.course,
    )
    if not http_throttle.allow((subject_id, body.group_id)):
        return {"written": False, "throttled": True}
    role = PROVIDER_ROLE if await presence.is_provider(subject_id) else None
    written = await sink.write_location(subject_id, position, group_id=body.group_id, role=role)
    if written and geofence_watch is not None:
        await geofence_watch.observe(subject_id, position, body.group_id)
    return {"written": written, "throttled": False}


# --- Presence ---


@app.get("/presence/{subject_id}", response_model=PresenceOut)
async def get_presence(subject_id: str, _=Depends(require_service_auth)):
    _ready()
    current = await presence.get_state(subject_id)
    if current is None:
        return PresenceOut(subject_id=subject_id, state=None)
    return PresenceOut(
        subject_id=subject_id, state=current.state.value, updated_at=current.updated_at
    )


@app.put("/presence/{subject_id}", response_model=PresenceOut)
async def put_presence(
    subject_id: str,
    body: PresenceUpdate,
    actor_id: str = Depends(get_actor_id),
    _=Depends(require_service_auth),
):
    _ready()
    updated = await presence.set_state(subject_id, body.state, actor_id)
    return PresenceOut(
        subject_id=subject_id, state=updated.state.value, updated_at=updated.updated_at
    )


@app.post("/presence/{subject_id}/activate", response_model=PresenceOut)
async def activate_presence(
    subject_id: str,
    actor_id: str = Depends(get_actor_id),
    _=Depends(require_service_auth),
):
    _ready()
    if actor_id != subject_id:
        raise Unauthorized(f"{actor_id} may not activate {subject_id}")
    updated = await presence.activate_provider(subject_id)
    return PresenceOut(
        subject_id=subject_id, state=updated.state.value, updated_at=updated.updated_at
    )


# --- Tracking loops ---


def _status(subject_id: str) -> TrackingStatusOut:
    loop = manager.get(subject_id)
    if loop is None:
        return TrackingStatusOut(subject_id=subject_id, state="idle")
    return TrackingStatusOut(
        subject_id=subject_id,
        state=loop.state.value,
        permission_blocked=loop.permission_blocked,
    )


@app.get("/tracking/{subject_id}", response_model=TrackingStatusOut)
async def tracking_status(subject_id: str, _=Depends(require_service_auth)):
    _ready()
    return _status(subject_id)


@app.post("/tracking/{subject_id}/start", response_model=TrackingStatusOut)
async def tracking_start(
    subject_id: str, body: TrackingStartIn | None = None, _=Depends(require_service_auth)
):
    _ready()
    body = body or TrackingStartIn()
    relay_hub.driver_for(subject_id, body.platform)
    await manager.start_tracking(subject_id, group_id=body.group_id)
    return _status(subject_id)


@app.post("/tracking/{subject_id}/stop", response_model=TrackingStatusOut)
async def tracking_stop(subject_id: str, _=Depends(require_service_auth)):
    _ready()
    await manager.stop_tracking(subject_id)
    relay_hub.forget(subject_id)
    return _status(subject_id)


@app.post("/tracking/{subject_id}/resume", response_model=TrackingStatusOut)
async def tracking_resume(subject_id: str, _=Depends(require_service_auth)):
    """Called once the user has gone through the permission guide."""
    _ready()
    loop = manager.get(subject_id)
    if loop is None:
        raise HTTPException(status_code=404, detail=f"No tracking loop for {subject_id}")
    await loop.resume_after_permission_prompt()
    return _status(subject_id)


# --- Device relay ---


@app.post("/relay/{subject_id}/fix")
async def relay_fix(subject_id: str, body: RelayFixIn, _=Depends(require_service_auth)):
    _ready()
    driver = relay_hub.driver_for(subject_id, body.platform)
    timestamp = body.timestamp or utcnow()
    driver.push_fix(
        {
            "latitude": body.latitude,
            "longitude": body.longitude,
            "accuracy": body.accuracy,
            "speed": body.speed,
            "heading": body.course,
            "timestamp": timestamp,
        }
    )
    return {"accepted": True, "watchers": driver.watch_count}


@app.post("/relay/{subject_id}/denied")
async def relay_denied(subject_id: str, body: RelayDeniedIn, _=Depends(require_service_auth)):
    _ready()
    relay_hub.driver_for(subject_id, body.platform).push_denied(body.reason or "")
    return _status(subject_id)


# --- Fan-out ---


@app.get("/snapshots")
async def get_snapshots(
    scope: str = Query("providers"),
    group_id: str | None = Query(None),
    _=Depends(require_service_auth),
):
    _ready()
    entries = await fanout.snapshot(_scope(scope, group_id))
    return {"scope": scope, "entries": [_snapshot_out(e) for e in entries]}


@app.websocket("/ws/snapshots")
async def ws_snapshots(
    websocket: WebSocket,
    scope: str = Query("providers"),
    group_id: str | None = Query(None),
) -> None:
    """Stream snapshots for a scope. Each message replaces the previous one."""
    await verify_ws_auth(websocket)
    await websocket.accept()
    try:
        target = _scope(scope, group_id)
    except ValueError as e:
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close()
        return

    subscription = fanout.subscribe(target)
    try:
        async for snapshot in subscription:
            await websocket.send_json(
                {"type": "snapshot", "entries": [_snapshot_out(e) for e in snapshot]}
            )
    except WebSocketDisconnect:
        logger.info("snapshot_ws_disconnected", scope=str(target))
    finally:
        await subscription.aclose()


# --- Hardware trackers ---


@app.post("/ingest/hardware", response_model=IngestResult)
async def ingest_hardware(request: Request, _=Depends(require_service_auth)):
    _ready()
    try:
        payload = await request.json()
    except Exception:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
    processed = await ingest.process(payload)
    return IngestResult(processed=processed)


@app.get("/trackers/{tracker_id}/history")
async def tracker_history(
    tracker_id: str,
    start: date = Query(...),
    end: date = Query(...),
    _=Depends(require_service_auth),
):
    _ready()
    return await fetch_history(session_factory, tracker_id, start, end)


# --- Geofences ---


@app.get("/groups/{group_id}/geofences")
async def list_geofences(group_id: str, _=Depends(require_service_auth)):
    _ready()
    return await geofence_tools.list_geofences(group_id)


@app.post("/groups/{group_id}/geofences", status_code=201)
async def create_geofence(group_id: str, body: GeofenceIn, _=Depends(require_service_auth)):
    _ready()
    return await geofence_tools.create_geofence(group_id, **body.model_dump())


@app.patch("/geofences/{geofence_id}")
async def update_geofence(geofence_id: str, body: GeofenceUpdate, _=Depends(require_service_auth)):
    _ready()
    return _result(
        await geofence_tools.update_geofence(geofence_id, **body.model_dump(exclude_unset=True))
    )


@app.delete("/geofences/{geofence_id}")
async def delete_geofence(geofence_id: str, _=Depends(require_service_auth)):
    _ready()
    return _result(await geofence_tools.delete_geofence(geofence_id))


@app.post("/geofences/{geofence_id}/trackers/{tracker_id}")
async def assign_geofence(geofence_id: str, tracker_id: str, _=Depends(require_service_auth)):
    _ready()
    return _result(await geofence_tools.assign_tracker(geofence_id, tracker_id))


@app.delete("/geofences/{geofence_id}/trackers/{tracker_id}")
async def unassign_geofence(geofence_id: str, tracker_id: str, _=Depends(require_service_auth)):
    _ready()
    return _result(await geofence_tools.unassign_tracker(geofence_id, tracker_id))


# --- Alerts ---


@app.get("/groups/{group_id}/alerts")
async def list_alerts(
    group_id: str, unread_only: bool = Query(False), _=Depends(require_service_auth)
):
    _ready()
    return await alert_tools.list_alerts(group_id, unread_only=unread_only)


@app.post("/groups/{group_id}/alerts/read")
async def mark_all_alerts_read(group_id: str, _=Depends(require_service_auth)):
    _ready()
    return await alert_tools.mark_all_read(group_id)


@app.post("/alerts/{alert_id}/read")
async def mark_alert_read(alert_id: str, _=Depends(require_service_auth)):
    _ready()
    return _result(await alert_tools.mark_read(alert_id))


@app.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    actor_id: str = Depends(get_actor_id),
    _=Depends(require_service_auth),
):
    _ready()
    return _result(await alert_tools.resolve(alert_id, actor_id))
