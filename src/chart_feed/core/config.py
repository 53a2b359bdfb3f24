from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    default_exchange: str = Field(default="NSE")
    subscription_mode: int = Field(default=2, ge=1, le=3)

    api_base_url: str = Field(default="http://127.0.0.1:5000/api/v1")
    websocket_url: str = Field(default="ws://127.0.0.1:8765")
    login_url: str = Field(default="http://127.0.0.1:5000/auth/login")
    credential_db: Path = Field(default=Path("./state/credentials.sqlite"))

    public_websocket_base_url: str = Field(default="wss://stream.binance.com:9443")
    public_rest_base_url: str = Field(default="https://api.binance.com")

    time_authority_url: str = Field(default="https://www.nplindia.in/cgi-bin/ntp_client")
    time_transmit_field: str = Field(default="nstt")
    clock_sync_interval_seconds: float = Field(default=60.0, gt=0)
    display_offset_seconds: int = Field(default=19_800)

    reconnect_max_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay_seconds: float = Field(default=1.0, gt=0)
    reconnect_max_delay_seconds: float = Field(default=10.0, gt=0)

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=3, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="CHART_FEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
