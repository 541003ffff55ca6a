"""
Shared configuration management for the Hermes webhook relay.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Process-level settings read from the environment (HERMES_*) or .env."""

    model_config = SettingsConfigDict(
        env_prefix="HERMES_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    service_name: str = Field(default="hermes-relay")

    # Configuration document
    config_path: Path = Field(default=Path("config.yml"))

    # Server
    bind_address: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Logging
    log_level: str = Field(default="info")
    log_format: str = Field(default="pretty")

    # Dispatch
    request_timeout: float = Field(default=30.0, gt=0)
    request_deadline: float = Field(default=120.0, gt=0)
    max_concurrent_requests: int = Field(default=1000, ge=1)

    # Lifecycle
    health_check_enabled: bool = Field(default=True)
    shutdown_grace_period: float = Field(default=30.0, ge=0)
    debug_endpoint_enabled: bool = Field(default=False)


def get_config(**overrides) -> RelaySettings:
    """Get relay settings, applying explicit overrides over the environment."""
    return RelaySettings(**overrides)
