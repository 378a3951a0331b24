"""Shared helpers for participant tests."""

import asyncio
from collections.abc import Callable

from participant.settings import ParticipantSettings


def fast_settings(**overrides: object) -> ParticipantSettings:
    """Settings with timings short enough for tests."""
    values: dict[str, object] = {
        "connect_timeout": 0.2,
        "heartbeat_interval": 60.0,
        "heartbeat_timeout": 0.05,
        "reconnect_base_delay": 0.01,
        "reconnect_max_delay": 0.02,
        "max_reconnect_attempts": 2,
        "simulation_min_interval": 60.0,
        "simulation_max_interval": 120.0,
        "simulation_reply_probability": 0.0,
    }
    values.update(overrides)
    return ParticipantSettings(**values)  # type: ignore[arg-type]


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until ``predicate`` holds, failing the test after ``timeout`` seconds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)
