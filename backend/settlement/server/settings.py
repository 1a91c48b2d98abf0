"""Settlement server configuration via environment variables."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from shared.validators import StringListEnvSettingsSource, normalize_base_url, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource

ESPN_FOOTBALL_BASE_URL = "https://site.api.espn.com/apis/site/v2/sports/football"


class SettlementSettings(BaseSettings):
    model_config = {"env_prefix": "SETTLEMENT_"}

    database_path: str = Field(default="backend/data/settlement.db", min_length=1)
    log_dir: str = Field(default="backend/logs/settlement", min_length=1)
    cors_origins: list[str] = []

    feed_base_url: str = ESPN_FOOTBALL_BASE_URL
    feed_timeout_seconds: float = Field(default=10.0, gt=0)

    poller_enabled: bool = True
    poll_interval_live_seconds: float = Field(default=15.0, gt=0)
    poll_interval_idle_seconds: float = Field(default=60.0, gt=0)
    pool_scan_interval_seconds: float = Field(default=30.0, gt=0)
    fetch_max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)

    settlement_max_attempts: int = Field(default=3, ge=1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @field_validator("feed_base_url")
    @classmethod
    def validate_feed_base_url(cls, v: str) -> str:
        return normalize_base_url(v)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings)
