"""API-key validation against provider identity endpoints."""

from credbroker.integrations.apikey.validator import (
    DEFAULT_PROVIDERS,
    SENDGRID,
    STRIPE,
    TWILIO,
    APIKeyProvider,
    APIKeyValidator,
    KeyFormat,
)

__all__ = [
    "APIKeyProvider",
    "APIKeyValidator",
    "DEFAULT_PROVIDERS",
    "KeyFormat",
    "SENDGRID",
    "STRIPE",
    "TWILIO",
]
