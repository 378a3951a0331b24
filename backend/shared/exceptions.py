"""Domain exceptions shared by the relay server and the participant client.

Nothing raised here is fatal to a process. The relay converts input and
protocol errors into ``error`` frames for the originating connection only;
the participant converts transport failures into connection state changes.
"""


class ChatError(Exception):
    """Base exception for all room-chat failures."""


class InvalidInputError(ChatError):
    """A room code, display name, or chat content failed validation."""


class ProtocolError(ChatError):
    """A frame could not be decoded or carried an unknown message type."""


class TransportFailureError(ChatError):
    """The underlying connection could not be opened or was lost.

    ``code`` holds the WebSocket close code when the peer supplied one.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class LivenessTimeoutError(TransportFailureError):
    """No heartbeat acknowledgement arrived within the allowed window."""
