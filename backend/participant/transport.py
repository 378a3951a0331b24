"""Client-side transport: the participant's view of one relay connection."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.exceptions import TransportFailureError

logger = structlog.get_logger()

NORMAL_CLOSURE = 1000


class ClientTransport(ABC):
    """
    One open connection to the relay, carrying JSON text frames.

    Every failure surfaces as TransportFailureError, with the close code
    attached when the peer sent one. Keeps the connection manager testable
    without a network.
    """

    @abstractmethod
    async def send_text(self, data: str) -> None: ...

    @abstractmethod
    async def receive_text(self) -> str:
        """
        Wait for the next text frame. Raises TransportFailureError once closed.
        """
        ...

    @abstractmethod
    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


# (url, timeout) -> open transport; raises TransportFailureError
Dialer = Callable[[str, float], Awaitable[ClientTransport]]


def _close_code(error: ConnectionClosed) -> int | None:
    if error.rcvd is not None:
        return error.rcvd.code
    return None


class WebSocketTransport(ClientTransport):
    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    async def send_text(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosed as e:
            raise TransportFailureError(f"connection closed: {e}", code=_close_code(e)) from e

    async def receive_text(self) -> str:
        try:
            frame = await self._connection.recv()
        except ConnectionClosed as e:
            raise TransportFailureError(f"connection closed: {e}", code=_close_code(e)) from e
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        await self._connection.close(code=code, reason=reason)


async def dial_websocket(url: str, timeout: float) -> ClientTransport:
    """Open a WebSocket to the relay within ``timeout`` seconds.

    Protocol-level pings are disabled: liveness is tracked with application
    ``ping``/``pong`` frames so the relay can see it.
    """
    try:
        async with asyncio.timeout(timeout):
            connection = await connect(url, open_timeout=None, ping_interval=None)
    except TimeoutError as e:
        raise TransportFailureError(f"timed out connecting to {url}") from e
    except (OSError, WebSocketException) as e:
        raise TransportFailureError(f"could not connect to {url}: {e}") from e
    logger.debug("websocket opened", url=url)
    return WebSocketTransport(connection)
