"""Best-effort fan-out of one frame to a group of sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from shared.messaging.encoder import encode

if TYPE_CHECKING:
    from collections.abc import Iterable

    from relay.session.models import Session


def send_to(session: Session, message: dict[str, Any]) -> bool:
    """Queue a message for one session. Return False if it was not queued."""
    return session.deliver(encode(message))


def broadcast_to_sessions(
    sessions: Iterable[Session],
    message: dict[str, Any],
    exclude_session_id: str | None = None,
) -> int:
    """Queue a message for every session except the excluded one.

    The frame is encoded once. Sessions that are no longer writable or whose
    outbox is full are skipped. Returns the number of sessions it was queued for.
    """
    payload = encode(message)
    delivered = 0
    for session in sessions:
        if session.session_id == exclude_session_id:
            continue
        if session.deliver(payload):
            delivered += 1
    return delivered
