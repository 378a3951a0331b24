"""Input validators for room codes and display names, plus settings helpers."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from pydantic_settings import EnvSettingsSource

from shared.exceptions import InvalidInputError

if TYPE_CHECKING:
    from pydantic.fields import FieldInfo

ROOM_CODE_LENGTH = 6
MAX_DISPLAY_NAME_LENGTH = 20

_ROOM_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")
_DISPLAY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9 \-_]+$")


def normalize_room_code(value: object) -> str:
    """Return the uppercase form of a room code, or raise InvalidInputError.

    Codes are exactly six ASCII letters or digits, accepted case-insensitively.
    """
    if not isinstance(value, str):
        raise InvalidInputError("Room code is required")
    code = value.strip().upper()
    if not _ROOM_CODE_PATTERN.match(code):
        raise InvalidInputError(f"Room code must be {ROOM_CODE_LENGTH} letters or digits")
    return code


def normalize_display_name(value: object) -> str:
    """Return the trimmed display name, or raise InvalidInputError."""
    if not isinstance(value, str):
        raise InvalidInputError("Username is required")
    name = value.strip()
    if not name or len(name) > MAX_DISPLAY_NAME_LENGTH:
        raise InvalidInputError(f"Username must be 1-{MAX_DISPLAY_NAME_LENGTH} characters")
    if not _DISPLAY_NAME_PATTERN.match(name):
        raise InvalidInputError("Username may only contain letters, digits, spaces, hyphens and underscores")
    return name


def parse_string_list(value: str | list[str], *, allow_empty: bool = False) -> list[str]:
    """Parse a string list from a JSON array string, a CSV string, or a list."""
    if isinstance(value, list):
        if not allow_empty and not value:
            raise ValueError("String list value must not be empty")
        return value

    stripped = value.strip()
    if not stripped:
        if allow_empty:
            return []
        raise ValueError("String list value must not be empty")

    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON array: {e}") from e
        if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
            raise ValueError("JSON value must be an array of strings")
        if not allow_empty and not parsed:
            raise ValueError("String list value must not be empty")
        return parsed

    items = [item.strip() for item in stripped.split(",") if item.strip()]
    if not allow_empty and not items:
        raise ValueError("String list value must not be empty")
    return items


_STRING_LIST_FIELDS = {"cors_origins"}


class StringListEnvSettingsSource(EnvSettingsSource):
    """Env source that hands string-list fields to validators undecoded.

    pydantic-settings JSON-decodes list fields before validators run, which
    would reject the CSV form accepted by parse_string_list.
    """

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,  # noqa: ANN401
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:  # noqa: ANN401
        if field_name in _STRING_LIST_FIELDS and isinstance(value, str):
            return value
        return super().prepare_field_value(field_name, field, value, value_is_complex)
