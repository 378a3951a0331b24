"""Starlette WebSocket endpoint: one task per participant connection."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect

from relay.messaging.protocol import ConnectionProtocol
from relay.server.rate_limit import TokenBucket
from shared.messaging.types import ErrorCode

if TYPE_CHECKING:
    from relay.messaging.router import MessageRouter
    from relay.server.settings import RelayServerSettings

logger = structlog.get_logger()


class WebSocketConnection(ConnectionProtocol):
    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self._websocket = websocket
        self._connection_id = connection_id or str(uuid4())

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def send_text(self, data: str) -> None:
        try:
            await self._websocket.send_text(data)
        except WebSocketDisconnect:
            raise ConnectionError("WebSocket already disconnected") from None

    async def receive_text(self) -> str:
        message = await self._websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise ConnectionError(f"WebSocket disconnected with code {message.get('code', 1000)}")
        text = message.get("text")
        if text is not None:
            return text
        # Binary frames are decoded leniently and fail JSON parsing as protocol errors.
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self._websocket.close(code=code, reason=reason)


async def websocket_endpoint(websocket: WebSocket, router: MessageRouter, settings: RelayServerSettings) -> None:
    await websocket.accept()

    connection = WebSocketConnection(websocket)
    session = await router.handle_connect(connection)
    structlog.contextvars.bind_contextvars(session_id=session.session_id)
    logger.info("websocket connected", client=str(websocket.client) if websocket.client else None)

    bucket = TokenBucket(rate=settings.rate_limit_rate, burst=settings.rate_limit_burst)

    try:
        while True:
            raw = await connection.receive_text()
            if not bucket.consume():
                router.send_error(session, ErrorCode.RATE_LIMITED, "Too many messages")
                continue
            await router.handle_frame(session, raw)
    except (WebSocketDisconnect, RuntimeError, ConnectionError):  # fmt: skip
        pass
    finally:
        logger.info("websocket disconnected")
        await router.handle_disconnect(session)
        structlog.contextvars.clear_contextvars()
