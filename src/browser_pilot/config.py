"""
Configuration management for Browser-Pilot

Uses pydantic-settings for environment variable parsing and validation.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass
class ConnectionConfig:
    """Timing and retry policy for one MCP connection (seconds)."""

    max_retries: int = 3
    retry_delay: float = 1.5
    retry_jitter: float = 1.0
    connection_timeout: float = 10.0
    keepalive_interval: float = 30.0
    call_timeout: float = 30.0
    reconnect_cooldown: float = 2.0
    min_reconnect_interval: float = 5.0
    close_timeout: float = 5.0


class LLMConfig(BaseSettings):
    """Configuration for the model provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 2048
    timeout: float = 120.0


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Browser-Pilot"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Model provider
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    anthropic_base_url: str | None = Field(default=None, description="Override for the Anthropic API URL")
    default_provider: Literal["anthropic"] = "anthropic"
    default_model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 2048
    model_timeout: float = Field(default=120.0, description="Seconds to wait for one model response")

    # Orchestration loop
    max_iterations: int = Field(default=10, description="Max model round-trips per cycle")
    max_history_tokens: int = Field(default=150_000, description="Estimated token budget for history")
    max_tool_result_chars: int = Field(default=5000, description="Tool result text truncation limit")
    dedupe_across_iterations: bool = Field(
        default=True,
        description="Skip repeated tool calls for the whole cycle instead of per iteration",
    )

    # MCP connection
    mcp_max_retries: int = 3
    mcp_retry_delay: float = 1.5
    mcp_retry_jitter: float = 1.0
    mcp_connection_timeout: float = 10.0
    mcp_keepalive_interval: float = 30.0
    mcp_call_timeout: float = 30.0
    mcp_reconnect_cooldown: float = 2.0
    mcp_min_reconnect_interval: float = 5.0
    mcp_client_idle_timeout: float = Field(default=30 * 60, description="Seconds before idle clients are evicted")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper() if v else "INFO"

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=self.default_model,
            api_key=api_key_map.get(provider, ""),
            base_url=self.anthropic_base_url,
            max_tokens=self.max_tokens,
            timeout=self.model_timeout,
        )

    def get_connection_config(self) -> ConnectionConfig:
        """Get connection settings for MCP clients."""
        return ConnectionConfig(
            max_retries=self.mcp_max_retries,
            retry_delay=self.mcp_retry_delay,
            retry_jitter=self.mcp_retry_jitter,
            connection_timeout=self.mcp_connection_timeout,
            keepalive_interval=self.mcp_keepalive_interval,
            call_timeout=self.mcp_call_timeout,
            reconnect_cooldown=self.mcp_reconnect_cooldown,
            min_reconnect_interval=self.mcp_min_reconnect_interval,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
