"""
Configuration management for shell-broker.

Uses pydantic-settings for environment variable parsing and validation.
Every field can be overridden with a ``BASH_SERVER_`` prefixed variable,
e.g. ``BASH_SERVER_PORT=4000``.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RC_FILE = Path(__file__).parent / "data" / "brokerrc"


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BASH_SERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "shell-broker"
    log_level: str = "INFO"

    # Server
    host: str = Field(default="127.0.0.1", description="Address the control socket binds to")
    port: int = Field(default=3031, description="Port the control socket binds to")

    # Shells
    default_shell_path: str = Field(default="/bin/bash", description="Shell used when openNewShell omits shellPath")
    rc_file: Path = Field(default=DEFAULT_RC_FILE, description="Startup file sourced by every spawned shell")
    prompt: str = Field(default="> ", description="PS1 exported to spawned shells")
    max_sessions: int = Field(default=0, ge=0, description="Maximum live shells per connection (0 = unlimited)")
    terminate_grace_seconds: float = Field(default=2.0, ge=0, description="Wait between SIGTERM and SIGKILL")

    # Protocol
    max_message_bytes: int = Field(default=1024 * 1024, gt=0, description="Largest accepted control message")
    reply_to_unknown_types: bool = Field(default=True, description="Send an observation for unsupported message types")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper() if v else "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
