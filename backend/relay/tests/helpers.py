"""Shared helpers for relay session and router tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

from relay.tests.mocks import MockConnection

if TYPE_CHECKING:
    from relay.messaging.router import MessageRouter
    from relay.session.models import Session


async def connect(router: MessageRouter) -> tuple[Session, MockConnection]:
    connection = MockConnection()
    session = await router.handle_connect(connection)
    return session, connection


async def join(router: MessageRouter, room_code: str, username: str) -> tuple[Session, MockConnection]:
    """Connect a new participant, join it to a room and flush its outbox."""
    session, connection = await connect(router)
    await router.handle_message(session, {"type": "join_room", "roomCode": room_code, "username": username})
    await session.flush()
    return session, connection


async def flush_all(*sessions: Session) -> None:
    for session in sessions:
        await session.flush()
