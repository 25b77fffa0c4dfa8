from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Environment", "LogLevel", "Settings"]

Environment = Literal["development", "test", "production"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """Chatbot MCP server settings.

    All settings can be configured via environment variables with the prefix MCP_.
    For example, MCP_AUTH_TOKEN=secret sets the bearer secret. The store credentials
    also accept the names used by managed Redis providers (REDIS_URL, KV_REST_API_TOKEN).
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    environment: Environment = "development"

    # Authentication
    auth_token: str | None = None
    """Bearer secret checked in production. Any token is accepted elsewhere."""

    # Key-value store
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MCP_REDIS_URL", "REDIS_URL", "KV_URL"),
    )
    redis_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MCP_REDIS_TOKEN", "KV_REST_API_TOKEN", "UPSTASH_REDIS_REST_TOKEN"),
    )
    redis_retries: int = Field(default=2, ge=0)
    allow_store_fallback: bool | None = None
    """Use the in-memory store when no credentials are set. Defaults to True outside production."""

    # Lifecycle event publisher
    publisher_url: str | None = None
    publisher_token: str | None = None

    # SSE sessions
    heartbeat_interval: float = Field(default=30.0, gt=0)
    max_duration: float | None = Field(default=None, gt=0)
    """Upper bound in seconds on the lifetime of one SSE connection."""

    # HTTP settings
    path: str = "/mcp"
    host: str = "0.0.0.0"
    port: int = 8080

    # Client settings
    server_url: str = "http://localhost:8080/mcp"
    """Base URL of the MCP server used by :func:`chatbot_mcp.client.create_mcp_client`."""

    # Server settings
    server_name: str = "MCP-Server"
    server_version: str = "1.0.0"
    instructions: str | None = None
    debug: bool = False
    log_level: LogLevel = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def fallback_allowed(self) -> bool:
        if self.allow_store_fallback is not None:
            return self.allow_store_fallback
        return not self.is_production
