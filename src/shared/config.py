"""Configuration management for the MCP Client Gateway.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseSettings):
    """Model provider configuration."""
    default_provider: str = Field(
        default="anthropic",
        description="Provider used when a connect request names none: anthropic, openai, ollama"
    )
    anthropic_api_key: Optional[str] = Field(default=None)
    anthropic_model: str = Field(default="claude-3-5-haiku-latest")
    openai_api_key: Optional[str] = Field(default=None)
    openai_model: str = Field(default="gpt-4o-mini")
    ollama_base_url: str = Field(default="http://localhost:11434")
    ollama_model: str = Field(default="llama3.2:1b")
    max_tokens: int = Field(default=1000, gt=0)
    request_timeout: Optional[float] = Field(default=None, description="Seconds; None waits forever")

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        extra="ignore"
    )


class MCPSettings(BaseSettings):
    """Tool server (MCP) connection configuration."""
    server_url: str = Field(default="http://localhost:3078/mcp")
    client_name: str = Field(default="mcp-client-http")
    client_version: str = Field(default="1.0.0")
    protocol_version: str = Field(default="2025-03-26")
    request_timeout: Optional[float] = Field(default=None, description="Seconds; None waits forever")
    connect_attempts: int = Field(default=3, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )


class GatewaySettings(BaseSettings):
    """HTTP gateway configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3077)
    route_prefix: str = Field(default="/mcp-client")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Sessions
    removal_history_size: int = Field(default=1000, ge=0)

    # Convert inbound JWTs into backend API tokens before connecting
    exchange_tokens: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )


class TokenExchangeSettings(BaseSettings):
    """Credential exchange configuration."""
    jwt_secret: str = Field(default="change-me-in-production")
    issuer: str = Field(default="ideascale")
    memberships_url: str = Field(
        default="https://ideas.ideascale.me/a/rest/backend/v1/memberships"
    )
    request_timeout: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="TOKEN_EXCHANGE_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    mcp: MCPSettings = Field(default_factory=MCPSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    token_exchange: TokenExchangeSettings = Field(default_factory=TokenExchangeSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_GATEWAY_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_GATEWAY_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
