from __future__ import annotations

import contextlib
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.staticfiles import StaticFiles

from relay.messaging.router import MessageRouter
from relay.server.settings import RelayServerSettings
from relay.server.websocket import websocket_endpoint
from relay.session.liveness import LivenessSupervisor
from relay.session.room_registry import RoomRegistry
from relay.session.session_store import SessionStore
from shared.build_info import APP_VERSION, GIT_COMMIT
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request
    from starlette.websockets import WebSocket


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": APP_VERSION, "commit": GIT_COMMIT})


async def status(request: Request) -> JSONResponse:
    sessions: SessionStore = request.app.state.sessions
    registry: RoomRegistry = request.app.state.registry
    return JSONResponse(
        {
            "status": "ok",
            "version": APP_VERSION,
            "sessions": sessions.session_count,
            "room_count": registry.room_count,
            "rooms": [info.model_dump() for info in registry.get_rooms_info()],
        },
    )


def create_app(
    settings: RelayServerSettings | None = None,
    sessions: SessionStore | None = None,
    registry: RoomRegistry | None = None,
    message_router: MessageRouter | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = RelayServerSettings()

    if sessions is None:
        sessions = SessionStore(outbox_size=settings.outbox_size)
    if registry is None:
        registry = RoomRegistry()
    if message_router is None:
        message_router = MessageRouter(sessions, registry, max_message_bytes=settings.max_message_bytes)

    supervisor = LivenessSupervisor(
        sessions,
        message_router.handle_disconnect,
        check_interval=settings.liveness_check_interval,
        timeout=settings.liveness_timeout,
    )

    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket_endpoint(websocket, message_router, settings)

    routes: list[Route | WebSocketRoute | Mount] = [
        Route("/health", health, methods=["GET"]),
        Route("/status", status, methods=["GET"]),
        WebSocketRoute("/ws", ws_endpoint),
    ]

    if settings.static_dir:
        static_dir = Path(settings.static_dir)
        if static_dir.is_dir():
            routes.append(Mount("/", app=StaticFiles(directory=str(static_dir), html=True), name="static"))
        else:
            logger.warning("static directory not found, static files will not be served", path=str(static_dir))

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        supervisor.start()
        yield
        await supervisor.stop()
        await sessions.close_all()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["Content-Type"],
    )
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.registry = registry
    app.state.supervisor = supervisor

    logger.info("relay server ready")
    return app


def get_app() -> Starlette:  # pragma: no cover
    """ASGI application factory for production use (uvicorn --factory relay.server.app:get_app)."""
    settings = RelayServerSettings()
    setup_logging(log_dir=settings.log_dir, name="relay")
    return create_app(settings=settings)
