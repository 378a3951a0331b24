import asyncio
import random

import pytest

from participant.manager import ClientConnectionManager, backoff_delay
from participant.state import ConnectionState
from participant.tests.helpers import fast_settings, wait_for
from participant.tests.mocks import FakeRelay
from shared.exceptions import InvalidInputError
from shared.messaging.types import RoomChatMessage


def make_manager(relay: FakeRelay, **overrides) -> ClientConnectionManager:
    return ClientConnectionManager(fast_settings(**overrides), dialer=relay.dial, rng=random.Random(7))


class TestBackoffDelay:
    def test_doubles_per_attempt(self):
        assert [backoff_delay(n, 1.0, 30.0) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert backoff_delay(6, 1.0, 30.0) == 30.0
        assert backoff_delay(20, 1.0, 30.0) == 30.0


class TestJoin:
    async def test_join_connects_and_tracks_members(self, manager, relay, states):
        state = await manager.join("abc123", "Alice")

        assert state is ConnectionState.CONNECTED
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert manager.room_code == "ABC123"
        assert relay.current.sent[0] == {
            "type": "join_room",
            "roomCode": "ABC123",
            "username": "Alice",
            "timestamp": relay.current.sent[0]["timestamp"],
        }
        await wait_for(lambda: manager.members == ["Alice", "Bob"])

    async def test_user_list_listener(self, manager):
        lists = []
        manager.on_user_list_change(lists.append)

        await manager.join("ABC123", "Alice")
        await wait_for(lambda: lists)

        assert lists[0] == ["Alice", "Bob"]

    @pytest.mark.parametrize(("room_code", "name"), [("ABC12", "Alice"), ("ABC123", ""), ("ABC123", "x" * 21)])
    async def test_invalid_input_raises_without_dialing(self, manager, relay, room_code, name):
        with pytest.raises(InvalidInputError):
            await manager.join(room_code, name)

        assert relay.dial_count == 0
        assert manager.state is ConnectionState.DISCONNECTED

    async def test_dial_failure_falls_back_to_simulation(self, manager, relay, states):
        relay.available = False
        errors = []
        manager.on_error(lambda code, message: errors.append(code))

        state = await manager.join("ABC123", "Zara")

        assert state is ConnectionState.SIMULATION
        assert states == [ConnectionState.CONNECTING, ConnectionState.SIMULATION]
        assert errors == ["transport_failure"]
        assert manager.members[0] == "Zara"
        assert len(manager.members) >= 2

    async def test_error_frame_before_ack_falls_back_to_simulation(self):
        relay = FakeRelay(reject_join="Username taken")
        manager = make_manager(relay)
        errors = []
        manager.on_error(lambda code, message: errors.append((code, message)))

        state = await manager.join("ABC123", "Alice")

        assert state is ConnectionState.SIMULATION
        assert errors[0][0] == "join_rejected"
        assert "Username taken" in errors[0][1]
        assert relay.current.closed
        await manager.aclose()

    async def test_ack_timeout_falls_back_to_simulation(self):
        relay = FakeRelay(answer_joins=False)
        manager = make_manager(relay, connect_timeout=0.05)

        state = await manager.join("ABC123", "Alice")

        assert state is ConnectionState.SIMULATION
        assert relay.current.closed
        await manager.aclose()

    async def test_joining_again_leaves_previous_room(self, manager, relay):
        await manager.join("ROOM01", "Alice")
        first = relay.current

        await manager.join("ROOM02", "Alice")

        assert first.sent_of_type("leave_room")
        assert first.closed
        assert manager.room_code == "ROOM02"
        assert manager.state is ConnectionState.CONNECTED


class TestMessaging:
    async def test_send_chat_round_trips_through_relay(self, manager, relay):
        received = []
        manager.on_message(received.append)
        await manager.join("ABC123", "Alice")

        assert await manager.send_chat("  hello  ") is True
        await wait_for(lambda: any(isinstance(m, RoomChatMessage) for m in received))

        sent = relay.current.sent_of_type("chat_message")
        assert sent[0]["content"] == "hello"
        chat = next(m for m in received if isinstance(m, RoomChatMessage))
        assert chat.id == sent[0]["id"]
        assert manager.history.get_chat_history("ABC123") == [chat]

    async def test_send_chat_rejects_blank_content(self, manager):
        await manager.join("ABC123", "Alice")

        with pytest.raises(InvalidInputError):
            await manager.send_chat("   ")

    async def test_send_chat_rejects_oversized_content(self, manager):
        await manager.join("ABC123", "Alice")

        with pytest.raises(InvalidInputError):
            await manager.send_chat("x" * 1001)

    async def test_send_while_disconnected_returns_false(self, manager):
        assert await manager.send_chat("hello") is False
        assert await manager.send_typing(True) is False

    async def test_send_typing(self, manager, relay):
        await manager.join("ABC123", "Alice")

        assert await manager.send_typing(True) is True

        assert relay.current.sent_of_type("typing")[0]["isTyping"] is True

    async def test_typing_from_member_with_same_name_reaches_listener(self, manager, relay):
        typing = []
        manager.on_typing(lambda username, is_typing: typing.append((username, is_typing)))
        await manager.join("ABC123", "Alice")

        # the relay never echoes our own typing, so a matching name is another member
        relay.current.push({"type": "typing", "username": "Alice", "isTyping": True, "timestamp": 1})
        relay.current.push({"type": "typing", "username": "Bob", "isTyping": False, "timestamp": 1})
        await wait_for(lambda: len(typing) == 2)

        assert typing == [("Alice", True), ("Bob", False)]

    async def test_relay_error_reaches_listener(self, manager, relay):
        errors = []
        manager.on_error(lambda code, message: errors.append((code, message)))
        await manager.join("ABC123", "Alice")

        relay.current.push({"type": "error", "code": "rate_limited", "message": "Too many messages", "timestamp": 1})
        await wait_for(lambda: errors)

        assert errors == [("rate_limited", "Too many messages")]
        assert manager.state is ConnectionState.CONNECTED

    async def test_malformed_frame_ignored(self, manager, relay):
        await manager.join("ABC123", "Alice")

        relay.current._inbox.put_nowait("not json")
        relay.current.push({"type": "user_list", "users": ["Alice", "Bob", "Carol"]})
        await wait_for(lambda: len(manager.members) == 3)

        assert manager.state is ConnectionState.CONNECTED

    async def test_failing_listener_does_not_break_manager(self, manager, relay):
        def boom(_users):
            raise ValueError("listener bug")

        manager.on_user_list_change(boom)
        received = []
        manager.on_user_list_change(received.append)

        await manager.join("ABC123", "Alice")
        await wait_for(lambda: received)

        assert manager.state is ConnectionState.CONNECTED

    async def test_unsubscribe_listener(self, manager):
        lists = []
        unsubscribe = manager.on_user_list_change(lists.append)
        unsubscribe()

        await manager.join("ABC123", "Alice")
        await wait_for(lambda: manager.members)

        assert lists == []


class TestConnectionLoss:
    async def test_normal_close_goes_to_disconnected(self, manager, relay, states):
        await manager.join("ABC123", "Alice")

        relay.current.drop(code=1000)
        await wait_for(lambda: manager.state is ConnectionState.DISCONNECTED)

        assert states[-1] is ConnectionState.DISCONNECTED
        assert ConnectionState.RECONNECTING not in states
        assert relay.dial_count == 1

    async def test_unexpected_close_reconnects(self, manager, relay, states):
        await manager.join("ABC123", "Alice")
        first = relay.current

        first.drop(code=1006)
        await wait_for(lambda: relay.dial_count == 2 and manager.state is ConnectionState.CONNECTED)

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert manager.reconnect_attempt == 0
        rejoin = relay.current.sent_of_type("join_room")[0]
        assert rejoin["roomCode"] == "ABC123"
        assert rejoin["username"] == "Alice"

    async def test_exhausted_retries_go_to_simulation(self, manager, relay, states):
        await manager.join("ABC123", "Alice")
        relay.available = False

        relay.current.drop(code=1006)
        await wait_for(lambda: manager.state is ConnectionState.SIMULATION)

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.SIMULATION,
        ]
        # initial dial plus two retries
        assert relay.dial_count == 3
        assert ConnectionState.DISCONNECTED not in states

    async def test_close_without_code_reconnects(self, manager, relay):
        await manager.join("ABC123", "Alice")

        relay.current.drop(code=None)
        await wait_for(lambda: relay.dial_count == 2 and manager.state is ConnectionState.CONNECTED)

    async def test_liveness_close_code_reconnects(self, manager, relay):
        await manager.join("ABC123", "Alice")

        relay.current.drop(code=4002)
        await wait_for(lambda: relay.dial_count == 2 and manager.state is ConnectionState.CONNECTED)


class TestHeartbeat:
    async def test_answered_heartbeats_keep_connection(self):
        relay = FakeRelay()
        manager = make_manager(relay, heartbeat_interval=0.02, heartbeat_timeout=0.05)
        await manager.join("ABC123", "Alice")

        await wait_for(lambda: len(relay.current.sent_of_type("ping")) >= 3)

        assert manager.state is ConnectionState.CONNECTED
        assert relay.dial_count == 1
        await manager.aclose()

    async def test_missing_pong_leaves_connected(self):
        relay = FakeRelay(answer_pings=False)
        manager = make_manager(
            relay,
            heartbeat_interval=0.02,
            heartbeat_timeout=0.03,
            reconnect_base_delay=10.0,
            reconnect_max_delay=10.0,
        )
        errors = []
        manager.on_error(lambda code, message: errors.append(code))
        await manager.join("ABC123", "Alice")
        first = relay.current

        await wait_for(lambda: manager.state is not ConnectionState.CONNECTED)

        assert manager.state is ConnectionState.RECONNECTING
        assert first.closed
        assert errors == ["liveness_timeout"]
        await manager.aclose()


class TestTeardown:
    async def test_leave_sends_leave_and_closes_normally(self, manager, relay, states):
        await manager.join("ABC123", "Alice")
        transport = relay.current

        await manager.leave()

        assert transport.sent_of_type("leave_room")
        assert transport.close_code == 1000
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.room_code is None
        assert states[-1] is ConnectionState.DISCONNECTED

    async def test_leave_cancels_pending_reconnect(self):
        relay = FakeRelay()
        manager = make_manager(relay, reconnect_base_delay=0.05, reconnect_max_delay=0.05)
        await manager.join("ABC123", "Alice")
        relay.current.drop(code=1006)
        await wait_for(lambda: manager.state is ConnectionState.RECONNECTING)

        await manager.leave()
        await asyncio.sleep(0.1)

        assert manager.state is ConnectionState.DISCONNECTED
        assert relay.dial_count == 1

    async def test_leave_stops_simulation(self, relay):
        relay.available = False
        manager = make_manager(relay, simulation_min_interval=0.01, simulation_max_interval=0.01)
        received = []
        manager.on_message(received.append)
        await manager.join("ABC123", "Zara")
        await wait_for(lambda: any(isinstance(m, RoomChatMessage) for m in received))

        await manager.leave()
        count = len(received)
        await asyncio.sleep(0.05)

        assert len(received) == count
        assert manager.state is ConnectionState.DISCONNECTED

    async def test_aclose_clears_listeners(self, manager, relay):
        states = []
        manager.on_connection_change(states.append)
        await manager.join("ABC123", "Alice")

        await manager.aclose()
        await manager.join("ABC123", "Alice")

        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED]

    async def test_async_context_manager(self, relay):
        async with make_manager(relay) as manager:
            await manager.join("ABC123", "Alice")
            transport = relay.current

        assert transport.closed
        assert manager.state is ConnectionState.DISCONNECTED


class TestSimulationMode:
    async def test_own_posts_echoed_and_recorded(self, relay):
        relay.available = False
        manager = make_manager(relay)
        received = []
        manager.on_message(received.append)
        await manager.join("ABC123", "Alice")

        assert await manager.send_chat("hello") is True
        assert await manager.send_typing(True) is True

        chats = [m for m in received if isinstance(m, RoomChatMessage)]
        assert chats[-1].username == "Alice"
        assert chats[-1].content == "hello"
        assert manager.history.get_chat_history("ABC123")[-1] == chats[-1]
        await manager.aclose()


class TestRoomInfo:
    async def test_snapshot(self, manager):
        await manager.join("ABC123", "Alice")
        await wait_for(lambda: manager.members)

        info = manager.room_info()

        assert info.room_code == "ABC123"
        assert info.display_name == "Alice"
        assert info.state is ConnectionState.CONNECTED
        assert info.members == ["Alice", "Bob"]
        assert info.reconnect_attempt == 0
