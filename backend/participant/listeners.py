"""Listener registry for UI collaborators of the connection manager."""

from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger()


class ListenerEvent(StrEnum):
    MESSAGE = "message"
    USER_LIST = "user_list"
    TYPING = "typing"
    CONNECTION = "connection"
    ERROR = "error"


class ListenerRegistry:
    """Fan out notifications to registered callbacks.

    A callback that raises is logged and skipped; the remaining callbacks
    still run and the exception never reaches the caller of ``emit``.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[ListenerEvent, list[Callable[..., Any]]] = defaultdict(list)

    def add(self, event: ListenerEvent, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register a callback. Returns a function that unregisters it."""
        self._listeners[event].append(callback)

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return remove

    def emit(self, event: ListenerEvent, *args: Any) -> None:  # noqa: ANN401
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("listener failed", listener_event=event.value)

    def clear(self) -> None:
        self._listeners.clear()
