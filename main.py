"""
HTTP host for the tracking engine.

One TrackingEngine per process. Signals arrive as validated JSON payloads,
engine state is exposed read-only, and profile changes and driving events
are pushed to WebSocket clients on /ws/events.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings, validate_startup
from engine.orchestrator import TrackingEngine
from errors.exceptions import engine_not_running, resource_not_found
from errors.handlers import register_exception_handlers
from health.service import HealthCheckService
from ingestion.service import (
    AppStateUpdate,
    BatchPositionUpdate,
    BatteryUpdate,
    ConnectivityUpdate,
    MotionUpdate,
    PositionUpdate,
    RealtimeRequest,
    SignalIngestionService,
)
from middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware
from services.elasticsearch_transmitter import ElasticsearchTransmitter
from session.redis_store import RedisDrivingSessionStore
from session.store import DrivingSessionStore, InMemoryDrivingSessionStore
from sync.transport import InMemoryTransmitter, Transmitter
from telemetry.service import TelemetryService
from websocket.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

SERVICE_NAME = "Tracking Engine API"
SERVICE_VERSION = "1.0.0"


async def build_transmitter(settings: Settings) -> Transmitter:
    if settings.transmitter_type == "elasticsearch":
        transmitter = ElasticsearchTransmitter(
            endpoint=settings.elastic_endpoint,
            index=settings.elastic_index,
            api_key=settings.elastic_api_key,
            request_timeout=settings.sync_transmit_timeout,
        )
        await asyncio.to_thread(transmitter.connect)
        return transmitter
    return InMemoryTransmitter()


async def build_session_store(settings: Settings) -> DrivingSessionStore:
    if settings.session_store_type == "redis":
        store = RedisDrivingSessionStore(
            settings.redis_url,
            default_ttl=timedelta(days=settings.session_ttl_days),
        )
        await store.connect()
        return store
    return InMemoryDrivingSessionStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start the engine on startup; stop it and close sinks on shutdown."""
    settings: Settings = app.state.settings
    validate_startup(settings)
    telemetry = TelemetryService(settings, configure_logging=app.state.configure_logging)

    logger.info(f"Starting {SERVICE_NAME}...", extra={"extra_data": {
        "environment": settings.environment.value,
        "transmitter_type": settings.transmitter_type,
        "session_store_type": settings.session_store_type,
    }})

    transmitter = app.state.transmitter or await build_transmitter(settings)
    session_store = app.state.session_store or await build_session_store(settings)

    engine = TrackingEngine(
        transmitter=transmitter,
        session_store=session_store,
        motion_config=settings.motion_config(),
        policy_config=settings.policy_config(),
        sync_config=settings.sync_config(),
        driving_config=settings.driving_config(),
        background_limited=settings.background_limited,
        telemetry=telemetry,
    )
    connection_manager = ConnectionManager()
    connection_manager.attach(engine)
    engine.start()

    app.state.engine = engine
    app.state.connection_manager = connection_manager
    app.state.ingestion = SignalIngestionService(engine)
    app.state.health = HealthCheckService(
        engine=engine,
        transmitter=transmitter,
        session_store=session_store,
        check_timeout=5.0,
    )

    yield

    logger.info(f"Shutting down {SERVICE_NAME}...")
    await connection_manager.close()
    await engine.stop()
    await transmitter.close()
    if isinstance(session_store, RedisDrivingSessionStore):
        await session_store.disconnect()


router = APIRouter()


def _engine(request: Request) -> TrackingEngine:
    engine: Optional[TrackingEngine] = getattr(request.app.state, "engine", None)
    if engine is None or not engine.running:
        raise engine_not_running()
    return engine


def _ingestion(request: Request) -> SignalIngestionService:
    _engine(request)
    return request.app.state.ingestion


@router.get("/")
async def root():
    return {"message": SERVICE_NAME, "version": SERVICE_VERSION}


# Signals

@router.post("/api/signals/position")
async def ingest_position(update: PositionUpdate, request: Request):
    return _ingestion(request).process_position(update)


@router.post("/api/signals/positions")
async def ingest_positions(batch: BatchPositionUpdate, request: Request):
    return _ingestion(request).process_positions(batch)


@router.post("/api/signals/motion")
async def ingest_motion(update: MotionUpdate, request: Request):
    return _ingestion(request).process_motion(update)


@router.post("/api/signals/connectivity")
async def ingest_connectivity(update: ConnectivityUpdate, request: Request):
    return _ingestion(request).process_connectivity(update)


@router.post("/api/signals/battery")
async def ingest_battery(update: BatteryUpdate, request: Request):
    return _ingestion(request).process_battery(update)


@router.post("/api/signals/app-state")
async def ingest_app_state(update: AppStateUpdate, request: Request):
    return _ingestion(request).process_app_state(update)


@router.post("/api/signals/realtime")
async def request_realtime(update: RealtimeRequest, request: Request):
    return _ingestion(request).process_realtime(update)


# Engine state

@router.get("/api/profile")
async def get_profile(request: Request):
    engine = _engine(request)
    return {
        "profile": engine.current_profile.to_dict(),
        "inputs": engine.policy.statistics()["inputs"],
    }


@router.get("/api/motion")
async def get_motion(request: Request):
    engine = _engine(request)
    return engine.classifier.metrics()


@router.get("/api/battery")
async def get_battery(request: Request):
    engine = _engine(request)
    return engine.battery_monitor.statistics(engine.current_profile.tier)


@router.get("/api/sync/stats")
async def get_sync_stats(request: Request):
    engine = _engine(request)
    return engine.pipeline.statistics()


@router.post("/api/sync/flush")
async def flush_sync_queue(request: Request, max_batch: Optional[int] = Query(default=None, ge=1, le=1000)):
    engine = _engine(request)
    result = await engine.pipeline.flush(max_batch)
    return result.to_dict()


@router.get("/api/engine/stats")
async def get_engine_stats(request: Request):
    return _engine(request).statistics()


# Driving sessions

@router.get("/api/driving/session")
async def get_driving_session(request: Request):
    engine = _engine(request)
    session = engine.tracker.current_session
    return {
        "active": session is not None,
        "session": session.to_dict(include_route=False) if session else None,
    }


@router.get("/api/driving/sessions")
async def list_driving_sessions(request: Request, limit: int = Query(default=20, ge=1, le=100)):
    engine = _engine(request)
    sessions = await engine.session_store.list_recent(engine.tracker.config.user_ref, limit)
    return {
        "sessions": [session.to_dict(include_route=False) for session in sessions],
        "count": len(sessions),
    }


@router.get("/api/driving/sessions/{session_id}")
async def get_driving_session_by_id(session_id: str, request: Request):
    engine = _engine(request)
    session = await engine.session_store.get(session_id)
    if session is None:
        raise resource_not_found(
            message=f"Driving session '{session_id}' not found",
            details={"session_id": session_id}
        )
    return session.to_dict()


# Live events

@router.websocket("/ws/events")
async def events_websocket(websocket: WebSocket):
    """
    Push engine events to the client.

    Message types: connection, profile_change, driving_state,
    driving_event, heartbeat. Clients may send "ping" and receive "pong".
    """
    manager: ConnectionManager = websocket.app.state.connection_manager
    await manager.connect(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)


# Health

@router.get("/health")
async def health_basic(request: Request):
    result = await request.app.state.health.check_health()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"]
    }


@router.get("/health/ready")
async def health_ready(request: Request):
    """200 when healthy or degraded, 503 with failure reasons when unhealthy."""
    health_status = await request.app.state.health.check_readiness()
    response_data = {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        **health_status.to_dict(),
    }

    if health_status.status == "unhealthy":
        response_data["failure_reasons"] = [
            {"dependency": dep.name, "error": dep.error}
            for dep in health_status.dependencies if not dep.healthy
        ]
        return JSONResponse(status_code=503, content=response_data)

    return response_data


@router.get("/health/live")
async def health_live(request: Request):
    result = await request.app.state.health.check_liveness()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"]
    }


def create_app(
    settings: Optional[Settings] = None,
    transmitter: Optional[Transmitter] = None,
    session_store: Optional[DrivingSessionStore] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings override; loaded from the environment when omitted
        transmitter: Sink override (tests pass an in-memory or mock sink)
        session_store: Session store override
        configure_logging: Install the JSON log handler on startup
    """
    settings = settings or get_settings()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.transmitter = transmitter
    app.state.session_store = session_store
    app.state.configure_logging = configure_logging

    register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Accept",
            "Accept-Language",
            "Content-Language",
            "Content-Type",
            "Authorization",
            REQUEST_ID_HEADER,
        ],
        expose_headers=[REQUEST_ID_HEADER],
        max_age=600,
    )
    # Added after CORS so it runs for every request.
    app.add_middleware(RequestIDMiddleware)

    app.include_router(router)
    return app


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(create_app(), host="0.0.0.0", port=port, log_level="info")
