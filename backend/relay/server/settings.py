"""Relay server configuration via environment variables."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


class RelayServerSettings(BaseSettings):
    model_config = {"env_prefix": "RELAY_"}

    log_dir: str | None = None
    cors_origins: list[str] = []
    # Directory served at "/" alongside the WebSocket endpoint; unset disables it.
    static_dir: str | None = None

    liveness_check_interval: float = Field(default=60.0, gt=0)
    liveness_timeout: float = Field(default=300.0, gt=0)

    outbox_size: int = Field(default=64, ge=1)
    max_message_bytes: int = Field(default=4096, ge=256)
    rate_limit_rate: float = Field(default=20.0, gt=0)
    rate_limit_burst: int = Field(default=40, ge=1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings
