from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from relay.session.broadcast import broadcast_to_sessions, send_to
from shared.exceptions import InvalidInputError, ProtocolError
from shared.messaging.encoder import MAX_FRAME_BYTES, DecodeError, decode
from shared.messaging.types import (
    ChatMessage,
    ErrorCode,
    ErrorMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    PingMessage,
    PongMessage,
    RoomChatMessage,
    RoomJoinedMessage,
    RoomLeftMessage,
    RoomTypingMessage,
    TypingMessage,
    UserJoinedMessage,
    UserLeftMessage,
    UserListMessage,
    parse_client_message,
)
from shared.validators import normalize_display_name, normalize_room_code

if TYPE_CHECKING:
    from relay.messaging.protocol import ConnectionProtocol
    from relay.session.models import Session
    from relay.session.room_registry import RoomRegistry
    from relay.session.session_store import SessionStore

logger = structlog.get_logger()


class MessageRouter:
    """
    Route inbound frames to the room registry and fan out the results.

    Contains no WebSocket I/O: outbound frames are queued on sessions, so
    the router can be tested with mock connections.
    """

    def __init__(
        self,
        sessions: SessionStore,
        registry: RoomRegistry,
        *,
        max_message_bytes: int = MAX_FRAME_BYTES,
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._max_message_bytes = max_message_bytes

    async def handle_connect(self, connection: ConnectionProtocol) -> Session:
        return self._sessions.open(connection)

    async def handle_frame(self, session: Session, raw: str) -> None:
        """Decode a raw text frame and dispatch it."""
        try:
            data = decode(raw, max_bytes=self._max_message_bytes)
        except DecodeError as e:
            logger.warning("undecodable frame", session_id=session.session_id, error=str(e))
            self.send_error(session, ErrorCode.PROTOCOL_ERROR, str(e))
            return
        await self.handle_message(session, data)

    async def handle_message(self, session: Session, raw_message: dict[str, Any]) -> None:
        # frames still buffered after an eviction must not re-enter a room
        if self._sessions.get(session.session_id) is not session:
            logger.debug("frame for closed session ignored", session_id=session.session_id)
            return
        try:
            message = parse_client_message(raw_message)
        except ProtocolError as e:
            logger.warning("unknown message", session_id=session.session_id, error=str(e))
            self.send_error(session, ErrorCode.PROTOCOL_ERROR, str(e))
            return
        except ValidationError as e:
            logger.info("invalid message fields", session_id=session.session_id, errors=e.error_count())
            self.send_error(session, ErrorCode.INVALID_INPUT, _first_error(e))
            return

        if isinstance(message, JoinRoomMessage):
            await self._handle_join(session, message)
        elif isinstance(message, LeaveRoomMessage):
            await self._handle_leave_request(session)
        elif isinstance(message, ChatMessage):
            self._handle_chat(session, message)
        elif isinstance(message, TypingMessage):
            self._handle_typing(session, message)
        elif isinstance(message, PingMessage):
            self._handle_ping(session)

    async def handle_disconnect(self, session: Session) -> None:
        """Run leave processing and drop the session. Safe to call more than once."""
        if self._sessions.get(session.session_id) is None:
            return
        room_code = await self._leave_current_room(session)
        await self._sessions.close(session.session_id)
        if room_code is not None:
            logger.info("member disconnected", session_id=session.session_id, room_code=room_code)

    def send_error(self, session: Session, code: ErrorCode, message: str) -> None:
        send_to(session, ErrorMessage(code=code, message=message).to_wire())

    async def _handle_join(self, session: Session, message: JoinRoomMessage) -> None:
        try:
            room_code = normalize_room_code(message.room_code)
            display_name = normalize_display_name(message.username)
        except InvalidInputError as e:
            self.send_error(session, ErrorCode.INVALID_INPUT, str(e))
            return

        if session.is_joined:
            await self._leave_current_room(session)

        async with self._registry.room_lock(room_code):
            users = self._registry.join(session, room_code, display_name)
            send_to(session, RoomJoinedMessage(room_code=room_code, username=display_name).to_wire())
            members = self._room_sessions(room_code)
            broadcast_to_sessions(
                members,
                UserJoinedMessage(username=display_name).to_wire(),
                exclude_session_id=session.session_id,
            )
            broadcast_to_sessions(members, UserListMessage(users=users).to_wire())

        logger.info(
            "member joined",
            session_id=session.session_id,
            room_code=room_code,
            username=display_name,
            member_count=len(users),
        )

    async def _handle_leave_request(self, session: Session) -> None:
        if not session.is_joined:
            self.send_error(session, ErrorCode.NOT_IN_ROOM, "Not in a room")
            return
        room_code = await self._leave_current_room(session)
        if room_code is not None:
            send_to(session, RoomLeftMessage(room_code=room_code).to_wire())

    async def _leave_current_room(self, session: Session) -> str | None:
        """Detach a session from its room and notify the remaining members.

        Returns the room code the session left, or None if it was not joined.
        """
        room_code = session.room_code
        if room_code is None:
            return None
        display_name = session.display_name or ""

        async with self._registry.room_lock(room_code):
            if session.room_code != room_code:
                return None
            room_persists = self._registry.leave(session)
            if room_persists:
                remaining = self._room_sessions(room_code)
                broadcast_to_sessions(remaining, UserLeftMessage(username=display_name).to_wire())
                broadcast_to_sessions(
                    remaining,
                    UserListMessage(users=self._registry.members_of(room_code)).to_wire(),
                )

        logger.info("member left", session_id=session.session_id, room_code=room_code, room_persists=room_persists)
        return room_code

    def _handle_chat(self, session: Session, message: ChatMessage) -> None:
        if session.room_code is None:
            self.send_error(session, ErrorCode.NOT_IN_ROOM, "Not in a room")
            return
        content = message.content.strip()
        if not content:
            self.send_error(session, ErrorCode.INVALID_INPUT, "Message content is required")
            return

        chat = RoomChatMessage(
            id=message.id or uuid4().hex,
            username=session.display_name or "",
            content=content,
        )
        delivered = broadcast_to_sessions(self._room_sessions(session.room_code), chat.to_wire())
        logger.debug("chat broadcast", room_code=session.room_code, message_id=chat.id, delivered=delivered)

    def _handle_typing(self, session: Session, message: TypingMessage) -> None:
        if session.room_code is None:
            return
        broadcast_to_sessions(
            self._room_sessions(session.room_code),
            RoomTypingMessage(username=session.display_name or "", is_typing=message.is_typing).to_wire(),
            exclude_session_id=session.session_id,
        )

    def _handle_ping(self, session: Session) -> None:
        session.touch()
        send_to(session, PongMessage().to_wire())

    def _room_sessions(self, room_code: str) -> list[Session]:
        return self._sessions.resolve(self._registry.member_ids(room_code))


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid message"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "Invalid message")
