"""
JSON encoder/decoder for the room-chat wire format.

Every frame is a single JSON object sent as a WebSocket text message.
"""

import json
from typing import Any

from shared.exceptions import ProtocolError

# Frames above this size are rejected before parsing.
MAX_FRAME_BYTES = 4096


class DecodeError(ProtocolError):
    """Raised when a frame is not a JSON object or is too large."""


def encode(data: dict[str, Any]) -> str:
    """
    Encode a dict to a compact JSON string.
    """
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def decode(raw: str | bytes, max_bytes: int = MAX_FRAME_BYTES) -> dict[str, Any]:
    """
    Decode a JSON frame to a dict.

    Raises DecodeError if the frame is oversized, not valid JSON, or not an object.
    """
    size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
    if size > max_bytes:
        raise DecodeError(f"frame too large: {size} bytes (max {max_bytes})")
    try:
        result = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"invalid JSON: {e}") from e

    if not isinstance(result, dict):
        raise DecodeError(f"expected object, got {type(result).__name__}")

    return result
