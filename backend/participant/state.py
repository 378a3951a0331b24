from enum import StrEnum

from pydantic import BaseModel


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    SIMULATION = "simulation"


class RoomSnapshot(BaseModel):
    """Point-in-time view of the participant's room, for display."""

    room_code: str | None
    display_name: str | None
    state: ConnectionState
    members: list[str]
    reconnect_attempt: int = 0
