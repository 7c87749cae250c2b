"""Runtime configuration for the broker, the CLI and transfer sessions."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PINQ_",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = Field(default="development")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    signaling_url: str = Field(default="http://localhost:3000")

    room_ttl_seconds: float = Field(default=300.0, gt=0)

    signaling_timeout: float = Field(default=90.0, gt=0)
    prewarm_timeout: float = Field(default=70.0, gt=0)
    reconnection_attempts: int = Field(default=5, ge=1)

    peer_timeout: float = Field(default=90.0, gt=0)
    offer_timeout: float = Field(default=90.0, gt=0)
    peer_connect_timeout: float = Field(default=30.0, gt=0)
    metadata_timeout: float = Field(default=300.0, gt=0)
    idle_timeout: float = Field(default=60.0, gt=0)
    ack_timeout: float = Field(default=10.0, gt=0)
    ack_linger: float = Field(default=0.8, ge=0)
    max_connect_attempts: int = Field(default=3, ge=1)

    chunk_size: int = Field(default=16 * 1024, gt=0)
    max_payload_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    inbox_size: int = Field(default=64, ge=1)
    legacy_ack: bool = Field(default=True)

    download_dir: Path = Field(default_factory=lambda: Path.home() / "Downloads")
    channel_host: str | None = Field(default=None)
    channel_port: int = Field(default=0, ge=0, le=65535)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value

    @property
    def ws_url(self) -> str:
        """Broker websocket URL derived from the HTTP signaling URL."""

        base = self.signaling_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):] + "/ws"
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):] + "/ws"
        return base + "/ws"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
