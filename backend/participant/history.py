"""In-memory chat history mirror, kept per room."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.messaging.types import RoomChatMessage

DEFAULT_HISTORY_LIMIT = 100


class ChatHistory:
    """Keep the most recent chat posts of each room.

    A display aid only: the connection manager records what it delivers
    here but never reads it back to decide anything.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._limit = limit
        self._rooms: dict[str, deque[RoomChatMessage]] = {}

    def save_message(self, room_code: str, message: RoomChatMessage) -> None:
        room = self._rooms.get(room_code)
        if room is None:
            room = deque(maxlen=self._limit)
            self._rooms[room_code] = room
        room.append(message)

    def get_chat_history(self, room_code: str) -> list[RoomChatMessage]:
        return list(self._rooms.get(room_code, ()))

    def clear_chat_history(self, room_code: str) -> None:
        self._rooms.pop(room_code, None)
