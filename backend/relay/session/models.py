"""Session and room models for the relay."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

if TYPE_CHECKING:
    from relay.messaging.protocol import ConnectionProtocol

logger = structlog.get_logger()

DEFAULT_OUTBOX_SIZE = 64

# Errors a transport may raise once the peer has gone away.
SEND_ERRORS = (ConnectionError, RuntimeError, OSError)


class RoomInfo(BaseModel):
    """Room summary for the status endpoint."""

    room_code: str
    member_count: int
    members: list[str]


@dataclass
class Room:
    """A named set of sessions sharing a room code.

    Holds session ids and display names only; transports stay with the
    SessionStore. A room exists only while it has at least one member.
    """

    room_code: str
    members: dict[str, str] = field(default_factory=dict)  # session_id -> display_name

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def is_empty(self) -> bool:
        return not self.members

    @property
    def member_names(self) -> list[str]:
        return list(self.members.values())


@dataclass(eq=False)
class Session:
    """Server-side state for one participant connection.

    Outbound frames go through a bounded queue drained by a per-session
    writer task, so a slow participant never blocks a broadcast. When the
    queue is full the frame is dropped for this session only.
    """

    session_id: str
    connection: ConnectionProtocol
    outbox_size: int = DEFAULT_OUTBOX_SIZE
    display_name: str | None = None
    room_code: str | None = None
    last_seen_at: float = field(default_factory=time.monotonic)
    writable: bool = True
    dropped: int = 0
    _outbox: asyncio.Queue[str] = field(init=False, repr=False)
    _writer: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._outbox = asyncio.Queue(maxsize=self.outbox_size)

    @property
    def is_joined(self) -> bool:
        return self.room_code is not None

    def touch(self) -> None:
        self.last_seen_at = time.monotonic()

    def deliver(self, payload: str) -> bool:
        """Queue an encoded frame without waiting. Return False if it was not queued."""
        if not self.writable:
            return False
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("outbox full, dropping frame", session_id=self.session_id, dropped=self.dropped)
            return False
        return True

    def start_writer(self) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop())

    async def stop_writer(self) -> None:
        """Stop accepting frames and cancel the writer. Queued frames are discarded."""
        self.writable = False
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the transport."""
        await self._outbox.join()

    async def _write_loop(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                if self.writable:
                    await self.connection.send_text(payload)
            except SEND_ERRORS as e:
                self.writable = False
                logger.info("session transport not writable", session_id=self.session_id, error=str(e))
            finally:
                self._outbox.task_done()
