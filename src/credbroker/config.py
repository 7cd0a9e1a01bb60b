"""Broker configuration models and utilities.

This module provides configuration for the credential broker: OAuth client
credentials per identity provider, the callback scheme, persistence, HTTP
timeouts and logging.
"""

import os
import re
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*$")


class BrokerSettings(BaseModel):
    """Global credential broker configuration.

    Attributes:
        google_client_id: OAuth client id for Google (public iOS/desktop client)
        microsoft_client_id: OAuth client id for Microsoft identity platform
        microsoft_client_secret: OAuth client secret for Microsoft (sensitive)
        callback_scheme: Custom URL scheme the app receives callbacks on
        database_url: Async SQLAlchemy URL for the credential store
        http_timeout_seconds: Per-request timeout for provider calls
        state_ttl_seconds: Lifetime of an abandoned authorization attempt
        master_key_name: Name of the master key in the secret store
        log_level: Logging level
        json_logs: Whether to render logs as JSON

    Example:
        >>> settings = BrokerSettings(google_client_id="123-abc.apps.googleusercontent.com")
        >>> settings.callback_scheme
        'credbroker'
    """

    model_config = ConfigDict(frozen=True)

    google_client_id: str = Field(default="", description="Google OAuth client id")
    microsoft_client_id: str = Field(default="", description="Microsoft OAuth client id")
    microsoft_client_secret: str = Field(
        default="", repr=False, description="Microsoft OAuth client secret (sensitive)"
    )
    callback_scheme: str = Field(default="credbroker", description="Callback URL scheme")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./credbroker.db", description="Credential store URL"
    )
    http_timeout_seconds: float = Field(
        default=20.0, ge=1.0, le=300.0, description="Provider request timeout (1s-5min)"
    )
    state_ttl_seconds: int = Field(
        default=600, ge=30, description="Lifetime of pending authorization attempts"
    )
    master_key_name: str = Field(
        default="credbroker.master_key", description="Secret store name of the master key"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=True, description="Render logs as JSON")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate and normalize the log level.

        Raises:
            ValueError: If the level is not a standard logging level
        """
        normalized = value.upper()
        if normalized not in _VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_VALID_LOG_LEVELS}, got '{value}'")
        return normalized

    @field_validator("callback_scheme")
    @classmethod
    def validate_callback_scheme(cls, value: str) -> str:
        """Validate the callback scheme is a syntactically valid URL scheme.

        Raises:
            ValueError: If the scheme contains characters not allowed by RFC 3986
        """
        normalized = value.lower()
        if not _SCHEME_PATTERN.match(normalized):
            raise ValueError(f"callback_scheme '{value}' is not a valid URL scheme")
        return normalized


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def load_settings_from_env(env_file: Optional[str] = None) -> BrokerSettings:
    """Load broker configuration from environment variables.

    Automatically loads variables from a .env file if present.

    Reads configuration from the following variables:
    - GOOGLE_CLIENT_ID: Google OAuth client id
    - MICROSOFT_CLIENT_ID: Microsoft OAuth client id
    - MICROSOFT_CLIENT_SECRET: Microsoft OAuth client secret
    - CREDBROKER_CALLBACK_SCHEME: Custom callback URL scheme
    - CREDBROKER_DATABASE_URL: Async SQLAlchemy URL
    - CREDBROKER_HTTP_TIMEOUT_SECONDS: Provider request timeout
    - CREDBROKER_STATE_TTL_SECONDS: Pending attempt lifetime
    - CREDBROKER_MASTER_KEY_NAME: Master key name in the secret store
    - CREDBROKER_LOG_LEVEL: Logging level
    - CREDBROKER_JSON_LOGS: Render logs as JSON (true/false)

    Args:
        env_file: Optional explicit path to a .env file

    Returns:
        BrokerSettings loaded from environment

    Raises:
        ValidationError: If a variable holds an invalid value
    """
    load_dotenv(env_file)

    return BrokerSettings(
        google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
        microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID", ""),
        microsoft_client_secret=os.getenv("MICROSOFT_CLIENT_SECRET", ""),
        callback_scheme=os.getenv("CREDBROKER_CALLBACK_SCHEME", "credbroker"),
        database_url=os.getenv(
            "CREDBROKER_DATABASE_URL", "sqlite+aiosqlite:///./credbroker.db"
        ),
        http_timeout_seconds=float(os.getenv("CREDBROKER_HTTP_TIMEOUT_SECONDS", "20")),
        state_ttl_seconds=int(os.getenv("CREDBROKER_STATE_TTL_SECONDS", "600")),
        master_key_name=os.getenv("CREDBROKER_MASTER_KEY_NAME", "credbroker.master_key"),
        log_level=os.getenv("CREDBROKER_LOG_LEVEL", "INFO"),
        json_logs=_env_flag("CREDBROKER_JSON_LOGS", True),
    )
