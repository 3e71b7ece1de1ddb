"""FastAPI endpoints for observation ticks, session control and live snapshot sync."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

import httpx
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .config import load_settings
from .engine import AttendanceEngine
from .models import HostSignals, Observation, SessionBlockedError
from .scheduler import LoopScheduler
from .store import create_store
from .submitter import ReportSubmitter

logger = logging.getLogger(__name__)


class ObservationModel(BaseModel):
    display_name: str = Field(default="", max_length=500)
    identity_hint: str | None = None
    is_host: bool = False
    is_self: bool = False
    role: str | None = None
    is_presenter: bool = False

    def to_observation(self) -> Observation:
        return Observation(
            display_name=self.display_name,
            identity_hint=self.identity_hint or None,
            is_host=self.is_host,
            is_self=self.is_self,
            role=self.role or None,
            is_presenter=self.is_presenter,
        )


class TickRequest(BaseModel):
    session_key: str = Field(min_length=1, max_length=200)
    observations: list[ObservationModel] = Field(default_factory=list)
    host_controls_visible: bool = False


class TickResponse(BaseModel):
    snapshot: dict[str, Any]
    events: list[dict[str, Any]]


class SignalRequest(BaseModel):
    kind: Literal["visibility", "page_text", "close"]
    hidden: bool = False
    text: str = Field(default="", max_length=10000)


class SignalResponse(BaseModel):
    accepted: bool


class StartSessionRequest(BaseModel):
    session_key: str = Field(min_length=1, max_length=200)
    token: str | None = None


class SessionResponse(BaseModel):
    session: dict[str, Any]
    notices: list[dict[str, Any]] = Field(default_factory=list)


class StoreTokenRequest(BaseModel):
    session_key: str = Field(min_length=1, max_length=200)
    token: str = Field(min_length=1)
    expires_at: float


class EndSessionResponse(BaseModel):
    report: dict[str, Any] | None


class SnapshotResponse(BaseModel):
    snapshot: dict[str, Any]


class RetryQueueResponse(BaseModel):
    stats: dict[str, Any]
    failures: list[dict[str, Any]]


class SnapshotWebSocketHub:
    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)

    async def send_snapshot(self, websocket: WebSocket, snapshot: dict[str, Any]) -> None:
        await websocket.send_json({"type": "snapshot.full", "snapshot": snapshot})

    async def broadcast_snapshot(self, snapshot: dict[str, Any]) -> None:
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections):
            try:
                await self.send_snapshot(websocket, snapshot)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(websocket=websocket)


def _default_engine() -> AttendanceEngine:
    settings = load_settings()
    client = httpx.AsyncClient(base_url=settings.backend_url)
    return AttendanceEngine.from_settings(
        settings,
        store=create_store(settings.database_url),
        scheduler=LoopScheduler(),
        submitter=ReportSubmitter(client),
    )


def _conflict(exc: SessionBlockedError) -> HTTPException:
    logger.info("[api] %s", exc)
    return HTTPException(status_code=409, detail=str(exc))


def create_app(engine: AttendanceEngine | None = None) -> FastAPI:
    attendance = engine if engine is not None else _default_engine()
    websocket_hub = SnapshotWebSocketHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        attendance.start()
        logger.info("[api] engine timers started")
        try:
            yield
        finally:
            attendance.stop()
            if attendance.submitter is not None:
                await attendance.submitter.client.aclose()
            logger.info("[api] engine timers stopped")

    app = FastAPI(title="Attend Tracker API", version="0.1.0", lifespan=lifespan)
    app.state.websocket_hub = websocket_hub
    app.state.engine = attendance

    async def publish_snapshot(snapshot: dict[str, Any]) -> None:
        await websocket_hub.broadcast_snapshot(snapshot=snapshot)

    app.state.publish_snapshot = publish_snapshot

    def get_engine() -> AttendanceEngine:
        return attendance

    @app.post("/api/ticks", response_model=TickResponse)
    async def post_tick(
        payload: TickRequest,
        local_engine: AttendanceEngine = Depends(get_engine),
    ) -> TickResponse:
        result = local_engine.process_tick(
            payload.session_key,
            [item.to_observation() for item in payload.observations],
            HostSignals(host_controls_visible=payload.host_controls_visible),
        )
        if result.blocked:
            raise _conflict(SessionBlockedError(payload.session_key, result.engine_events[0]["activeKey"]))
        await publish_snapshot(snapshot=result.snapshot)
        return TickResponse(snapshot=result.snapshot, events=result.engine_events)

    @app.post("/api/signals", response_model=SignalResponse)
    def post_signal(
        payload: SignalRequest,
        local_engine: AttendanceEngine = Depends(get_engine),
    ) -> SignalResponse:
        if payload.kind == "visibility":
            local_engine.visibility_changed(payload.hidden)
            return SignalResponse(accepted=True)
        if payload.kind == "page_text":
            return SignalResponse(accepted=local_engine.observe_page_text(payload.text))
        return SignalResponse(accepted=local_engine.request_end())

    @app.post("/api/session/start", response_model=SessionResponse)
    def start_session(
        payload: StartSessionRequest,
        local_engine: AttendanceEngine = Depends(get_engine),
    ) -> SessionResponse:
        result = local_engine.start_session(payload.session_key, token=payload.token)
        if result.blocked:
            raise _conflict(SessionBlockedError(payload.session_key, result.blocked_by))
        return SessionResponse(session=result.session.to_dict(), notices=local_engine.notices)

    @app.get("/api/session", response_model=SessionResponse)
    def get_session(local_engine: AttendanceEngine = Depends(get_engine)) -> SessionResponse:
        session = local_engine.sessions.status(local_engine.scheduler.now())
        if session is None:
            raise HTTPException(status_code=404, detail="No active session")
        return SessionResponse(session=session.to_dict(), notices=local_engine.notices)

    @app.post("/api/session/end", response_model=EndSessionResponse)
    async def end_session(local_engine: AttendanceEngine = Depends(get_engine)) -> EndSessionResponse:
        if local_engine.session_key is None:
            raise HTTPException(status_code=404, detail="No meeting is being tracked")
        report = await local_engine.end_now()
        await publish_snapshot(snapshot=local_engine.snapshot())
        return EndSessionResponse(report=report)

    @app.post("/api/session/clear", response_model=SnapshotResponse)
    async def clear_session(local_engine: AttendanceEngine = Depends(get_engine)) -> SnapshotResponse:
        local_engine.clear()
        snapshot = local_engine.snapshot()
        await publish_snapshot(snapshot=snapshot)
        return SnapshotResponse(snapshot=snapshot)

    @app.post("/api/tokens", status_code=204)
    def store_token(
        payload: StoreTokenRequest,
        local_engine: AttendanceEngine = Depends(get_engine),
    ) -> None:
        local_engine.store_token(payload.session_key, payload.token, payload.expires_at)

    @app.get("/api/snapshot", response_model=SnapshotResponse)
    def get_snapshot(local_engine: AttendanceEngine = Depends(get_engine)) -> SnapshotResponse:
        return SnapshotResponse(snapshot=local_engine.snapshot())

    @app.get("/api/retry-queue", response_model=RetryQueueResponse)
    def get_retry_queue(local_engine: AttendanceEngine = Depends(get_engine)) -> RetryQueueResponse:
        return RetryQueueResponse(
            stats=local_engine.retry_queue.stats(),
            failures=local_engine.retry_queue.failures(),
        )

    @app.websocket("/ws/snapshot")
    async def snapshot_ws(
        websocket: WebSocket,
        local_engine: AttendanceEngine = Depends(get_engine),
    ) -> None:
        await websocket_hub.connect(websocket=websocket)
        await websocket_hub.send_snapshot(websocket=websocket, snapshot=local_engine.snapshot())

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            websocket_hub.disconnect(websocket=websocket)

    return app
