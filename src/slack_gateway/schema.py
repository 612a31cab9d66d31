"""Pydantic models for gateway.yaml."""

from __future__ import annotations

from pydantic import BaseModel, Field

from slack_gateway import conventions


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = conventions.SERVER_DEFAULT_PORT
    api_key: str = ""  # bearer key for admin routes; empty = open
    log_level: str = "INFO"


class StoreSettings(BaseModel):
    database_url: str = ""  # postgresql+asyncpg://... enables the database tier
    redis_url: str = ""  # redis://... enables the shared tier
    redis_key_prefix: str = conventions.REDIS_KEY_PREFIX
    data_dir: str = ""  # empty: data/ under the gateway home
    flush_delay_seconds: float = Field(default=1.0, ge=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)


class ThreadSettings(BaseModel):
    timeout_minutes: float = Field(default=10, gt=0)
    summary_threshold: int = Field(default=10, ge=1)
    keep_recent: int = Field(default=5, ge=0)


class RelaySettings(BaseModel):
    update_interval_ms: int = Field(default=500, ge=0)
    cursor: str = " ▌"
    thinking_text: str = "Thinking..."
    failure_text: str = (
        "Sorry, an error occurred while processing your message. Please try again."
    )
    default_model: str = "anthropic/claude-sonnet-4"
    max_output_tokens: int = 4096
    temperature: float = 0.7
    default_streaming: bool = True


class GatewaySettings(BaseModel):
    """Root of gateway.yaml."""

    server: ServerSettings = Field(default_factory=ServerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    threads: ThreadSettings = Field(default_factory=ThreadSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
