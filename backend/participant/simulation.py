"""Offline stand-in for the relay when no server can be reached."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

from shared.messaging.types import RoomChatMessage, UserJoinedMessage, UserListMessage

if TYPE_CHECKING:
    import random
    from collections.abc import Callable, Coroutine

    from shared.messaging.types import ServerMessage

logger = structlog.get_logger()

SIMULATED_USERS = ("Alice", "Bob", "Charlie", "Diana")
SIMULATED_REPLIES = (
    "That's interesting!",
    "I agree with you",
    "Thanks for sharing",
    "Good point!",
    "Exactly what I was thinking",
    "Nice!",
    "Cool stuff",
    "Makes sense",
)
REPLY_DELAY_RANGE = (1.0, 4.0)  # seconds


class SimulationFallback:
    """Fabricate room activity locally.

    Emits the same typed events the relay would send, through the same
    ``emit`` callback the manager uses for server frames, so listeners
    cannot tell the two apart. Sends nothing over the network.
    """

    def __init__(
        self,
        display_name: str,
        emit: Callable[[ServerMessage], None],
        rng: random.Random,
        *,
        min_interval: float,
        max_interval: float,
        reply_probability: float,
        reply_delay: tuple[float, float] = REPLY_DELAY_RANGE,
    ) -> None:
        self._display_name = display_name
        self._emit = emit
        self._rng = rng
        self._min_interval = min_interval
        self._max_interval = max_interval
        self._reply_probability = reply_probability
        self._reply_delay = reply_delay
        self._members: list[str] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def members(self) -> list[str]:
        return [self._display_name, *self._members]

    def start(self) -> None:
        """Populate the room with one to three simulated members and start chatter."""
        if self._running:
            return
        self._running = True
        candidates = [name for name in SIMULATED_USERS if name != self._display_name]
        count = min(self._rng.randint(1, 3), len(candidates))
        for name in self._rng.sample(candidates, count):
            self._members.append(name)
            self._emit(UserJoinedMessage(username=name))
        self._emit(UserListMessage(users=self.members))
        self._spawn(self._chatter_loop())
        logger.info("simulation started", simulated_members=self._members)

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    def post(self, content: str) -> RoomChatMessage:
        """Echo an own post back as delivered and maybe schedule a reply."""
        message = RoomChatMessage(id=uuid4().hex, username=self._display_name, content=content)
        self._emit(message)
        if self._running and self._members and self._rng.random() < self._reply_probability:
            delay = self._rng.uniform(*self._reply_delay)
            self._spawn(self._reply_after(delay))
        return message

    async def _reply_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._post_as_member()

    async def _chatter_loop(self) -> None:
        while True:
            await asyncio.sleep(self._rng.uniform(self._min_interval, self._max_interval))
            self._post_as_member()

    def _post_as_member(self) -> None:
        if not self._members:
            return
        self._emit(
            RoomChatMessage(
                id=uuid4().hex,
                username=self._rng.choice(self._members),
                content=self._rng.choice(SIMULATED_REPLIES),
            ),
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
