"""Participant-side connection manager.

Owns the single relay connection for one participant: joining a room,
heartbeats, reconnecting with exponential backoff and, when the relay
cannot be reached, falling back to a locally simulated room.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from participant.history import ChatHistory
from participant.listeners import ListenerEvent, ListenerRegistry
from participant.settings import ParticipantSettings
from participant.simulation import SimulationFallback
from participant.state import ConnectionState, RoomSnapshot
from participant.transport import NORMAL_CLOSURE, dial_websocket
from shared.exceptions import ChatError, InvalidInputError, LivenessTimeoutError, ProtocolError, TransportFailureError
from shared.messaging.encoder import decode, encode
from shared.messaging.types import (
    ChatMessage,
    ErrorMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    PingMessage,
    PongMessage,
    RoomChatMessage,
    RoomJoinedMessage,
    RoomTypingMessage,
    ServerMessage,
    TypingMessage,
    UserJoinedMessage,
    UserLeftMessage,
    UserListMessage,
    now_ms,
    parse_server_message,
)
from shared.validators import normalize_display_name, normalize_room_code

if TYPE_CHECKING:
    from collections.abc import Callable

    from participant.transport import ClientTransport, Dialer

logger = structlog.get_logger()

_CLOSE_WAIT_SECONDS = 2.0


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based): base * 2^(n-1), capped."""
    return min(cap, base * 2 ** (attempt - 1))


class JoinRejectedError(ChatError):
    """The relay answered a join with an error frame instead of an acknowledgement."""


class ClientConnectionManager:
    """
    Connect a participant to a room and keep the connection alive.

    State machine:

    - ``join`` moves disconnected -> connecting -> connected, or to
      simulation if the relay cannot be reached or rejects the join.
    - An unexpected close or a missed heartbeat moves connected ->
      reconnecting; a normal close from the relay moves it to disconnected.
    - Reconnecting re-dials and re-joins the remembered room with
      exponential backoff, ending in connected or, once the retry budget
      is spent, simulation.

    Only one of (reader + heartbeat), the reconnect loop, or the simulation
    is active at any time. ``leave`` and ``aclose`` cancel all of them.
    """

    def __init__(
        self,
        settings: ParticipantSettings | None = None,
        *,
        dialer: Dialer | None = None,
        history: ChatHistory | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or ParticipantSettings()
        self._dialer = dialer or dial_websocket
        self._history = history or ChatHistory(limit=self._settings.history_limit)
        self._rng = rng or random.Random()  # noqa: S311
        self._listeners = ListenerRegistry()

        self._state = ConnectionState.DISCONNECTED
        self._room_code: str | None = None
        self._display_name: str | None = None
        self._members: list[str] = []
        self._reconnect_attempt = 0

        self._transport: ClientTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._pong_waiter: asyncio.Future[None] | None = None
        self._simulation: SimulationFallback | None = None

    async def __aenter__(self) -> ClientConnectionManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- public state ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def room_code(self) -> str | None:
        return self._room_code

    @property
    def display_name(self) -> str | None:
        return self._display_name

    @property
    def members(self) -> list[str]:
        return list(self._members)

    @property
    def history(self) -> ChatHistory:
        return self._history

    def room_info(self) -> RoomSnapshot:
        return RoomSnapshot(
            room_code=self._room_code,
            display_name=self._display_name,
            state=self._state,
            members=list(self._members),
            reconnect_attempt=self._reconnect_attempt,
        )

    # --- listeners ---

    def on_message(
        self,
        callback: Callable[[RoomChatMessage | UserJoinedMessage | UserLeftMessage], Any],
    ) -> Callable[[], None]:
        return self._listeners.add(ListenerEvent.MESSAGE, callback)

    def on_user_list_change(self, callback: Callable[[list[str]], Any]) -> Callable[[], None]:
        return self._listeners.add(ListenerEvent.USER_LIST, callback)

    def on_typing(self, callback: Callable[[str, bool], Any]) -> Callable[[], None]:
        return self._listeners.add(ListenerEvent.TYPING, callback)

    def on_connection_change(self, callback: Callable[[ConnectionState], Any]) -> Callable[[], None]:
        return self._listeners.add(ListenerEvent.CONNECTION, callback)

    def on_error(self, callback: Callable[[str, str], Any]) -> Callable[[], None]:
        """Register a callback receiving (code, message) for relay errors and connection failures."""
        return self._listeners.add(ListenerEvent.ERROR, callback)

    # --- lifecycle ---

    async def join(self, room_code: str, display_name: str) -> ConnectionState:
        """Join a room, returning the resulting state (connected or simulation).

        Raises InvalidInputError for a malformed room code or display name;
        nothing is dialed in that case. Joining while already in a room
        leaves it first.
        """
        code = normalize_room_code(room_code)
        name = normalize_display_name(display_name)

        if self._state is not ConnectionState.DISCONNECTED:
            await self.leave()

        self._room_code = code
        self._display_name = name
        self._members = []
        self._reconnect_attempt = 0
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self._establish()
        except ChatError as e:
            logger.warning("could not reach relay, switching to simulation", room_code=code, error=str(e))
            self._notify_error(e)
            self._enter_simulation()
        else:
            self._set_state(ConnectionState.CONNECTED)
            self._start_connection_tasks()
        return self._state

    async def leave(self) -> None:
        """Leave the current room and stop every background task. Safe to call in any state."""
        await self._teardown()
        self._room_code = None
        self._members = []
        self._reconnect_attempt = 0
        self._set_state(ConnectionState.DISCONNECTED)

    async def aclose(self) -> None:
        """Leave and drop all listeners. The manager can still join again afterwards."""
        await self.leave()
        self._listeners.clear()

    # --- outbound ---

    async def send_chat(self, content: str) -> bool:
        """Post a chat message. Returns False if it could not be handed off.

        Raises InvalidInputError for empty, oversized or malformed content.
        """
        content = content.strip()
        if not content:
            raise InvalidInputError("Message content is required")
        try:
            message = ChatMessage(content=content, id=uuid4().hex, timestamp=now_ms())
        except ValidationError as e:
            raise InvalidInputError(e.errors()[0]["msg"]) from e

        if self._state is ConnectionState.SIMULATION and self._simulation is not None:
            self._simulation.post(message.content)
            return True
        return await self._send(message.to_wire())

    async def send_typing(self, is_typing: bool) -> bool:  # noqa: FBT001
        if self._state is ConnectionState.SIMULATION:
            return True
        return await self._send(TypingMessage(is_typing=is_typing, timestamp=now_ms()).to_wire())

    async def _send(self, message: dict[str, Any]) -> bool:
        transport = self._transport
        if self._state is not ConnectionState.CONNECTED or transport is None:
            return False
        try:
            await transport.send_text(encode(message))
        except TransportFailureError as e:
            # The reader sees the same failure and drives the state change.
            logger.info("send failed", error=str(e))
            return False
        return True

    # --- connection ---

    async def _establish(self) -> None:
        """Dial, send join_room and wait for room_joined. Raises ChatError on any failure."""
        settings = self._settings
        transport = await self._dialer(settings.server_url, settings.connect_timeout)
        join = JoinRoomMessage(room_code=self._room_code or "", username=self._display_name or "", timestamp=now_ms())
        try:
            async with asyncio.timeout(settings.connect_timeout):
                await transport.send_text(encode(join.to_wire()))
                ack = await self._await_ack(transport)
        except TimeoutError as e:
            await self._close_quietly(transport)
            raise TransportFailureError("timed out waiting for room_joined") from e
        except ChatError:
            await self._close_quietly(transport)
            raise
        except asyncio.CancelledError:
            await self._close_quietly(transport)
            raise

        self._transport = transport
        self._room_code = ack.room_code
        self._display_name = ack.username
        self._reconnect_attempt = 0
        logger.info("joined room", room_code=ack.room_code, username=ack.username)

    async def _await_ack(self, transport: ClientTransport) -> RoomJoinedMessage:
        while True:
            event = self._parse(await transport.receive_text())
            if isinstance(event, RoomJoinedMessage):
                return event
            if isinstance(event, ErrorMessage):
                raise JoinRejectedError(f"{event.code}: {event.message}")
            if event is not None:
                self._dispatch(event)

    def _start_connection_tasks(self) -> None:
        transport = self._transport
        if transport is None:
            return
        self._reader_task = asyncio.create_task(self._read_loop(transport))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(transport))

    async def _read_loop(self, transport: ClientTransport) -> None:
        try:
            while True:
                event = self._parse(await transport.receive_text())
                if event is not None:
                    self._dispatch(event)
        except TransportFailureError as e:
            await self._handle_connection_lost(transport, e)

    async def _heartbeat_loop(self, transport: ClientTransport) -> None:
        settings = self._settings
        while True:
            await asyncio.sleep(settings.heartbeat_interval)
            self._pong_waiter = asyncio.get_running_loop().create_future()
            try:
                await transport.send_text(encode(PingMessage(timestamp=now_ms()).to_wire()))
                async with asyncio.timeout(settings.heartbeat_timeout):
                    await self._pong_waiter
            except TimeoutError:
                error = LivenessTimeoutError(f"no pong within {settings.heartbeat_timeout}s")
                logger.warning("heartbeat timeout", timeout=settings.heartbeat_timeout)
                await self._handle_connection_lost(transport, error)
                return
            except TransportFailureError as e:
                await self._handle_connection_lost(transport, e)
                return
            finally:
                self._pong_waiter = None

    async def _handle_connection_lost(self, transport: ClientTransport, error: TransportFailureError) -> None:
        # Reader and heartbeat may both notice the same loss; the first one wins.
        if transport is not self._transport:
            return
        self._transport = None
        self._cancel_connection_tasks()

        # Transition before awaiting the close so a concurrent leave() sees the new state.
        if error.code == NORMAL_CLOSURE:
            logger.info("relay closed the connection", room_code=self._room_code)
            self._members = []
            self._set_state(ConnectionState.DISCONNECTED)
        else:
            logger.warning("connection lost", room_code=self._room_code, code=error.code, error=str(error))
            self._notify_error(error)
            self._set_state(ConnectionState.RECONNECTING)
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

        await self._close_quietly(transport)

    async def _reconnect_loop(self) -> None:
        settings = self._settings
        while self._reconnect_attempt < settings.max_reconnect_attempts:
            self._reconnect_attempt += 1
            delay = backoff_delay(self._reconnect_attempt, settings.reconnect_base_delay, settings.reconnect_max_delay)
            logger.info(
                "reconnecting",
                attempt=self._reconnect_attempt,
                max_attempts=settings.max_reconnect_attempts,
                delay=delay,
            )
            await asyncio.sleep(delay)
            try:
                await self._establish()
            except ChatError as e:
                logger.info("reconnect attempt failed", attempt=self._reconnect_attempt, error=str(e))
                continue
            self._set_state(ConnectionState.CONNECTED)
            self._start_connection_tasks()
            return

        logger.warning("reconnect attempts exhausted, switching to simulation", attempts=self._reconnect_attempt)
        self._enter_simulation()

    def _enter_simulation(self) -> None:
        self._set_state(ConnectionState.SIMULATION)
        settings = self._settings
        self._simulation = SimulationFallback(
            self._display_name or "",
            self._dispatch,
            self._rng,
            min_interval=settings.simulation_min_interval,
            max_interval=settings.simulation_max_interval,
            reply_probability=settings.simulation_reply_probability,
        )
        self._simulation.start()

    def _cancel_connection_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._reader_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader_task = None
        self._heartbeat_task = None
        if self._pong_waiter is not None and not self._pong_waiter.done():
            self._pong_waiter.cancel()

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reconnect_task, self._reader_task, self._heartbeat_task)
            if task is not None and task is not current
        ]
        self._reconnect_task = None
        self._cancel_connection_tasks()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._simulation is not None:
            await self._simulation.stop()
            self._simulation = None

        transport = self._transport
        self._transport = None
        if transport is not None:
            with contextlib.suppress(TransportFailureError):
                await transport.send_text(encode(LeaveRoomMessage().to_wire()))
            await self._close_quietly(transport)

    async def _close_quietly(self, transport: ClientTransport) -> None:
        with contextlib.suppress(TimeoutError, TransportFailureError, OSError, RuntimeError):
            async with asyncio.timeout(_CLOSE_WAIT_SECONDS):
                await transport.close(code=NORMAL_CLOSURE)

    # --- inbound ---

    def _parse(self, raw: str) -> ServerMessage | None:
        try:
            return parse_server_message(decode(raw))
        except (ProtocolError, ValidationError) as e:
            logger.warning("ignoring malformed frame from relay", error=str(e))
            return None

    def _dispatch(self, event: ServerMessage) -> None:
        """Deliver one server event to listeners. Simulation events come through here too."""
        if isinstance(event, RoomChatMessage):
            if self._room_code is not None:
                self._history.save_message(self._room_code, event)
            self._listeners.emit(ListenerEvent.MESSAGE, event)
        elif isinstance(event, UserJoinedMessage | UserLeftMessage):
            self._listeners.emit(ListenerEvent.MESSAGE, event)
        elif isinstance(event, UserListMessage):
            self._members = list(event.users)
            self._listeners.emit(ListenerEvent.USER_LIST, self.members)
        elif isinstance(event, RoomTypingMessage):
            self._listeners.emit(ListenerEvent.TYPING, event.username, event.is_typing)
        elif isinstance(event, PongMessage):
            if self._pong_waiter is not None and not self._pong_waiter.done():
                self._pong_waiter.set_result(None)
        elif isinstance(event, ErrorMessage):
            logger.info("relay reported error", code=event.code, message=event.message)
            self._listeners.emit(ListenerEvent.ERROR, event.code.value, event.message)

    def _notify_error(self, error: ChatError) -> None:
        if isinstance(error, LivenessTimeoutError):
            code = "liveness_timeout"
        elif isinstance(error, JoinRejectedError):
            code = "join_rejected"
        else:
            code = "transport_failure"
        self._listeners.emit(ListenerEvent.ERROR, code, str(error))

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("connection state changed", old_state=self._state.value, new_state=state.value)
        self._state = state
        self._listeners.emit(ListenerEvent.CONNECTION, state)
