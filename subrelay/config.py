"""
Configuration module for the Subscription Relay.

This module uses Pydantic Settings to load and validate environment variables
for the upstream fetch, outbound header defaults, protocol tally header,
logging and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# RFC 7230 token characters
_HEADER_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every field has a default, so the relay starts with an empty environment.
    """

    # =========================================================================
    # Upstream Fetch Configuration
    # =========================================================================

    UPSTREAM_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Upper bound on the total wait for one upstream fetch (send + body read)",
        gt=0,
        le=120,
    )

    # =========================================================================
    # Outbound Header Defaults
    # =========================================================================

    DEFAULT_USER_AGENT: str = Field(
        default="ClashMeta/1.18 (subrelay)",
        description="User-Agent sent upstream when the caller did not send one",
        min_length=1,
    )

    DEFAULT_ACCEPT_ENCODING: str = Field(
        default="gzip",
        description="Accept-Encoding sent upstream when the caller did not send one",
        min_length=1,
    )

    # =========================================================================
    # Response Configuration
    # =========================================================================

    PROTOCOL_HEADER_NAME: str = Field(
        default="X-Node-Protocols",
        description="Response header carrying the JSON protocol tally",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    RELAY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the relay server",
    )

    RELAY_PORT: int = Field(
        default=8080,
        description="Port to bind the relay server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # CORS Configuration
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("PROTOCOL_HEADER_NAME")
    @classmethod
    def validate_header_name(cls, v: str) -> str:
        """
        Validate that the tally header name is a legal HTTP header token.

        Raises:
            ValueError: If the name contains separators, spaces or is empty
        """
        v = v.strip()
        if not _HEADER_TOKEN.match(v):
            raise ValueError(f"Invalid header name: '{v}'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize LOG_LEVEL and reject unknown level names."""
        level = v.strip().upper()
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if level not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Cached so the environment is read once per process. Routes receive it
    through ``Depends(get_settings)`` so tests can override it.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If an environment variable is present but invalid.
    """
    return Settings()
