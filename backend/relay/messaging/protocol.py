"""Abstract connection protocol for JSON text-frame communication."""

from abc import ABC, abstractmethod


class ConnectionProtocol(ABC):
    """
    Abstract interface for a participant connection.

    Lets routing and session logic be tested without real WebSocket
    connections. One JSON object per text frame.
    """

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique identifier for this connection."""
        ...

    @abstractmethod
    async def send_text(self, data: str) -> None:
        """
        Send one text frame to the participant.
        """
        ...

    @abstractmethod
    async def receive_text(self) -> str:
        """
        Receive one text frame from the participant.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Close the connection.
        """
        ...
