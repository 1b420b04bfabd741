"""
Configuration for the channel agent.

Values are loaded once at startup from environment variables (and an optional
``.env`` file) and validated with Pydantic. There is no hot reload.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from channel_agent.exceptions import ConfigError
from channel_agent.types import DeliveryMode

DEFAULT_RPC_URL = "https://fullnode.testnet.sui.io:443"
DEFAULT_PACKAGE_ID = "0x984960ebddd75c15c6d38355ac462621db0ffc7d6647214c802cd3b685e1af3d"
DEFAULT_ENOKI_API_BASE = "https://api.enoki.mystenlabs.com/v1"


class AgentSettings(BaseSettings):
    """Process configuration for the agent and its HTTP surface."""

    private_key: str = Field(alias="AGENT_PRIVATE_KEY")
    openai_api_key: str = Field(alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-4o-mini", alias="AGENT_OPENAI_MODEL")

    rpc_url: str = Field(DEFAULT_RPC_URL, alias="AGENT_RPC_URL")
    gateway_url: str = Field("http://localhost:4100", alias="AGENT_GATEWAY_URL")
    gateway_api_key: str = Field("", alias="AGENT_GATEWAY_API_KEY")
    package_id: str = Field(DEFAULT_PACKAGE_ID, alias="AGENT_PACKAGE_ID")

    poll_interval_ms: int = Field(10_000, ge=0, alias="POLLING_INTERVAL_MS")
    session_ttl_minutes: int = Field(30, ge=2, alias="AGENT_SESSION_TTL_MINUTES")
    renew_margin_seconds: float = Field(60.0, ge=0, alias="AGENT_SESSION_RENEW_MARGIN_SECONDS")
    event_page_size: int = Field(50, ge=1, le=1000, alias="AGENT_EVENT_PAGE_SIZE")
    history_limit: int = Field(10, ge=1, alias="AGENT_HISTORY_LIMIT")
    max_reply_chars: int = Field(400, ge=4, alias="AGENT_MAX_REPLY_CHARS")
    delivery_mode: DeliveryMode = Field(DeliveryMode.BATCH, alias="AGENT_DELIVERY_MODE")

    request_timeout_seconds: float = Field(30.0, gt=0, alias="AGENT_REQUEST_TIMEOUT_SECONDS")
    finality_timeout_seconds: float = Field(60.0, gt=0, alias="AGENT_FINALITY_TIMEOUT_SECONDS")

    http_host: str = Field("0.0.0.0", alias="AGENT_HTTP_HOST")
    http_port: int = Field(3000, alias="PORT")
    enoki_api_key: str = Field("", alias="ENOKI_PRIVATE_API_KEY")
    enoki_api_base: str = Field(DEFAULT_ENOKI_API_BASE, alias="ENOKI_API_BASE")

    log_level: str = Field("INFO", alias="AGENT_LOG_LEVEL")

    model_config = {"env_file": ".env", "extra": "ignore", "populate_by_name": True}

    @field_validator("private_key", "openai_api_key")
    @classmethod
    def _required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


def load_settings(env_file: str | Path | None = None) -> AgentSettings:
    """Load and validate settings.

    Raises:
        ConfigError: If a required value is missing or a value is invalid.
    """
    try:
        if env_file is not None:
            return AgentSettings(_env_file=env_file)  # type: ignore[call-arg]
        return AgentSettings()  # type: ignore[call-arg]
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ConfigError(f"Invalid configuration: {fields}") from exc
