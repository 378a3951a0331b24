"""Session store: the sole owner of live participant transports."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from relay.session.models import DEFAULT_OUTBOX_SIZE, Session

if TYPE_CHECKING:
    from relay.messaging.protocol import ConnectionProtocol

logger = structlog.get_logger()


class SessionStore:
    """In-memory store of live sessions keyed by server-issued session id.

    The store is the only owner of transport handles. Rooms refer to
    sessions by id and resolve them here when broadcasting.
    """

    def __init__(self, outbox_size: int = DEFAULT_OUTBOX_SIZE) -> None:
        self._sessions: dict[str, Session] = {}  # session_id -> Session
        self._outbox_size = outbox_size

    def open(self, connection: ConnectionProtocol, session_id: str | None = None) -> Session:
        """Create a session for a freshly accepted connection and start its writer."""
        session = Session(
            session_id=session_id or str(uuid4()),
            connection=connection,
            outbox_size=self._outbox_size,
        )
        self._sessions[session.session_id] = session
        session.start_writer()
        logger.debug("session opened", session_id=session.session_id, connection_id=connection.connection_id)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def resolve(self, session_ids: list[str]) -> list[Session]:
        """Return the live sessions for the given ids, skipping unknown ones."""
        return [s for sid in session_ids if (s := self._sessions.get(sid)) is not None]

    def all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def close(self, session_id: str) -> Session | None:
        """Remove a session and stop its writer. Return the removed session, if any."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.stop_writer()
            logger.debug("session closed", session_id=session_id)
        return session

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
