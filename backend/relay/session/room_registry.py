"""Room lifecycle: lazy creation on first join, deletion with the last member."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from relay.session.models import Room, RoomInfo
from shared.validators import normalize_display_name, normalize_room_code

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from relay.session.models import Session

logger = structlog.get_logger()


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # coroutines holding or waiting on the lock


class RoomRegistry:
    """Authoritative mapping of room code to member sessions.

    Membership mutations (join, leave) are synchronous and must run while
    the caller holds ``room_lock`` for every room they touch, so that a
    join or leave and the broadcasts that follow it form one sequence no
    other member can observe interleaved. Locks are created on demand and
    dropped once no coroutine holds or waits on them.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._locks: dict[str, _LockEntry] = {}

    @contextlib.asynccontextmanager
    async def room_lock(self, room_code: str) -> AsyncIterator[None]:
        entry = self._locks.get(room_code)
        if entry is None:
            entry = _LockEntry()
            self._locks[room_code] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(room_code, None)

    def join(self, session: Session, room_code: str, display_name: str) -> list[str]:
        """Add a session to a room, creating the room if needed.

        Raises InvalidInputError for a malformed code or name. Any prior
        membership is dropped first. Returns the resulting member names.
        """
        code = normalize_room_code(room_code)
        name = normalize_display_name(display_name)

        self.leave(session)

        room = self._rooms.get(code)
        if room is None:
            room = Room(room_code=code)
            self._rooms[code] = room
            logger.info("room created", room_code=code)

        room.members[session.session_id] = name
        session.room_code = code
        session.display_name = name
        return room.member_names

    def leave(self, session: Session) -> bool:
        """Remove a session from its room. Return True if the room still exists."""
        code = session.room_code
        if code is None:
            return False
        session.room_code = None

        room = self._rooms.get(code)
        if room is None:
            return False

        room.members.pop(session.session_id, None)
        if room.is_empty:
            del self._rooms[code]
            logger.info("room deleted", room_code=code)
            return False
        return True

    def members_of(self, room_code: str) -> list[str]:
        room = self._rooms.get(room_code.upper())
        return room.member_names if room is not None else []

    def member_ids(self, room_code: str) -> list[str]:
        room = self._rooms.get(room_code.upper())
        return list(room.members) if room is not None else []

    def get_room(self, room_code: str) -> Room | None:
        return self._rooms.get(room_code.upper())

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def get_rooms_info(self) -> list[RoomInfo]:
        return [
            RoomInfo(room_code=room.room_code, member_count=room.member_count, members=room.member_names)
            for room in self._rooms.values()
        ]
