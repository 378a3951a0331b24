import time
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from shared.exceptions import ProtocolError

# ASCII control character boundaries for input validation
_SPACE_ORD = 0x20
_DEL_ORD = 0x7F

MAX_CHAT_CONTENT_LENGTH = 1000
MAX_MESSAGE_ID_LENGTH = 64


def now_ms() -> int:
    """Wall-clock timestamp in integer milliseconds, as carried on the wire."""
    return int(time.time() * 1000)


class ClientMessageType(StrEnum):
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    CHAT_MESSAGE = "chat_message"
    TYPING = "typing"
    PING = "ping"


class ServerMessageType(StrEnum):
    ROOM_JOINED = "room_joined"
    ROOM_LEFT = "room_left"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    USER_LIST = "user_list"
    CHAT_MESSAGE = "chat_message"
    TYPING = "typing"
    PONG = "pong"
    ERROR = "error"


class ErrorCode(StrEnum):
    INVALID_INPUT = "invalid_input"
    PROTOCOL_ERROR = "protocol_error"
    NOT_IN_ROOM = "not_in_room"
    RATE_LIMITED = "rate_limited"


class WireMessage(BaseModel):
    """Base for every frame: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        validate_by_name=True,
        validate_by_alias=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _reject_control_characters(v: str) -> str:
    if any((ord(c) < _SPACE_ORD and c not in ("\t", "\n", "\r")) or ord(c) == _DEL_ORD for c in v):
        raise ValueError("content must not contain control characters")
    return v


# --- Client -> server ---


class JoinRoomMessage(WireMessage):
    type: Literal["join_room"] = "join_room"
    # Format checks live in shared.validators so the relay can report them as invalid_input.
    room_code: str = ""
    username: str = ""
    timestamp: int | None = None


class LeaveRoomMessage(WireMessage):
    type: Literal["leave_room"] = "leave_room"


class ChatMessage(WireMessage):
    type: Literal["chat_message"] = "chat_message"
    content: str = Field(default="", max_length=MAX_CHAT_CONTENT_LENGTH)
    id: str | None = Field(default=None, min_length=1, max_length=MAX_MESSAGE_ID_LENGTH)
    timestamp: int | None = None

    @field_validator("content")
    @classmethod
    def _validate_content(cls, v: str) -> str:
        return _reject_control_characters(v)


class TypingMessage(WireMessage):
    type: Literal["typing"] = "typing"
    is_typing: bool = False
    timestamp: int | None = None


class PingMessage(WireMessage):
    type: Literal["ping"] = "ping"
    timestamp: int | None = None


ClientMessage = JoinRoomMessage | LeaveRoomMessage | ChatMessage | TypingMessage | PingMessage


# --- Server -> client ---


class RoomJoinedMessage(WireMessage):
    type: Literal["room_joined"] = "room_joined"
    room_code: str
    username: str


class RoomLeftMessage(WireMessage):
    type: Literal["room_left"] = "room_left"
    room_code: str


class UserJoinedMessage(WireMessage):
    type: Literal["user_joined"] = "user_joined"
    username: str
    timestamp: int = Field(default_factory=now_ms)


class UserLeftMessage(WireMessage):
    type: Literal["user_left"] = "user_left"
    username: str
    timestamp: int = Field(default_factory=now_ms)


class UserListMessage(WireMessage):
    type: Literal["user_list"] = "user_list"
    users: list[str]


class RoomChatMessage(WireMessage):
    """Chat post as fanned out to every member, sender included."""

    type: Literal["chat_message"] = "chat_message"
    id: str
    username: str
    content: str
    timestamp: int = Field(default_factory=now_ms)


class RoomTypingMessage(WireMessage):
    type: Literal["typing"] = "typing"
    username: str
    is_typing: bool
    timestamp: int = Field(default_factory=now_ms)


class PongMessage(WireMessage):
    type: Literal["pong"] = "pong"
    timestamp: int = Field(default_factory=now_ms)


class ErrorMessage(WireMessage):
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str
    timestamp: int = Field(default_factory=now_ms)


ServerMessage = (
    RoomJoinedMessage
    | RoomLeftMessage
    | UserJoinedMessage
    | UserLeftMessage
    | UserListMessage
    | RoomChatMessage
    | RoomTypingMessage
    | PongMessage
    | ErrorMessage
)

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(
    Annotated[ClientMessage, Field(discriminator="type")],
)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(
    Annotated[ServerMessage, Field(discriminator="type")],
)


def parse_client_message(data: dict[str, Any]) -> ClientMessage:
    """Parse a decoded frame into a typed client message.

    Raises ProtocolError for a missing or unknown ``type`` and pydantic's
    ValidationError for a known type with invalid fields.
    """
    message_type = data.get("type")
    if message_type not in ClientMessageType.__members__.values():
        raise ProtocolError(f"unknown message type: {message_type!r}")
    return _client_adapter.validate_python(data)


def parse_server_message(data: dict[str, Any]) -> ServerMessage:
    """Parse a decoded frame received from the relay into a typed event."""
    message_type = data.get("type")
    if message_type not in ServerMessageType.__members__.values():
        raise ProtocolError(f"unknown message type: {message_type!r}")
    return _server_adapter.validate_python(data)
