import pytest

from relay.messaging.router import MessageRouter
from relay.session.room_registry import RoomRegistry
from relay.session.session_store import SessionStore


@pytest.fixture
async def sessions():
    store = SessionStore()
    yield store
    await store.close_all()


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def router(sessions, registry):
    return MessageRouter(sessions, registry)
