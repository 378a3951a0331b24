import random

import pytest

from participant.manager import ClientConnectionManager
from participant.tests.helpers import fast_settings
from participant.tests.mocks import FakeRelay


@pytest.fixture
def relay():
    return FakeRelay(others=["Bob"])


@pytest.fixture
async def manager(relay):
    manager = ClientConnectionManager(fast_settings(), dialer=relay.dial, rng=random.Random(7))
    yield manager
    await manager.aclose()


@pytest.fixture
def states(manager):
    recorded = []
    manager.on_connection_change(recorded.append)
    return recorded
