"""Participant configuration via environment variables."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class ParticipantSettings(BaseSettings):
    model_config = {"env_prefix": "PARTICIPANT_"}

    server_url: str = "ws://localhost:8000/ws"
    connect_timeout: float = Field(default=10.0, gt=0)

    heartbeat_interval: float = Field(default=30.0, gt=0)
    heartbeat_timeout: float = Field(default=5.0, gt=0)

    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)

    # Seconds between unprompted posts from simulated members.
    simulation_min_interval: float = Field(default=15.0, gt=0)
    simulation_max_interval: float = Field(default=45.0, gt=0)
    simulation_reply_probability: float = Field(default=0.3, ge=0, le=1)

    history_limit: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def validate_intervals(self) -> ParticipantSettings:
        if self.simulation_min_interval > self.simulation_max_interval:
            raise ValueError("simulation_min_interval must not exceed simulation_max_interval")
        if self.reconnect_base_delay > self.reconnect_max_delay:
            raise ValueError("reconnect_base_delay must not exceed reconnect_max_delay")
        return self
