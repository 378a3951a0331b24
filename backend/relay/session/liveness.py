"""Evict sessions that stop sending heartbeats."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from relay.session.models import SEND_ERRORS

if TYPE_CHECKING:
    from relay.session.models import Session
    from relay.session.session_store import SessionStore

LIVENESS_CHECK_INTERVAL = 60  # seconds between sweeps
LIVENESS_TIMEOUT = 300  # seconds of silence before eviction
LIVENESS_CLOSE_CODE = 4002
_CLOSE_WAIT_SECONDS = 5.0

logger = structlog.get_logger()

# Called with each evicted session; runs the same leave path as a disconnect.
EvictCallback = Callable[["Session"], Awaitable[None]]


class LivenessSupervisor:
    """Periodically close sessions whose last heartbeat is too old.

    A coarse server-side safety net: the participant's own heartbeat
    detects a dead link much sooner. Runs as one background task
    independent of the connection tasks and never waits on a slow
    transport for longer than a bounded close timeout.
    """

    def __init__(
        self,
        sessions: SessionStore,
        on_evict: EvictCallback,
        *,
        check_interval: float = LIVENESS_CHECK_INTERVAL,
        timeout: float = LIVENESS_TIMEOUT,
        close_wait: float = _CLOSE_WAIT_SECONDS,
    ) -> None:
        self._sessions = sessions
        self._on_evict = on_evict
        self._check_interval = check_interval
        self._timeout = timeout
        self._close_wait = close_wait
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop. Idempotent."""
        if self.running:
            return
        self._task = asyncio.create_task(self._check_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def sweep(self) -> list[str]:
        """Evict every stale session once. Return the evicted session ids."""
        now = time.monotonic()
        stale = [s for s in self._sessions.all_sessions() if now - s.last_seen_at > self._timeout]
        for session in stale:
            logger.info(
                "liveness timeout, evicting session",
                session_id=session.session_id,
                idle_seconds=round(now - session.last_seen_at),
            )
            await self._force_close(session)
            try:
                await self._on_evict(session)
            except Exception:
                logger.exception("error while evicting session", session_id=session.session_id)
        return [s.session_id for s in stale]

    async def _force_close(self, session: Session) -> None:
        with contextlib.suppress(TimeoutError, *SEND_ERRORS):
            async with asyncio.timeout(self._close_wait):
                await session.connection.close(code=LIVENESS_CLOSE_CODE, reason="liveness_timeout")

    async def _check_loop(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("liveness sweep failed")
