"""Exception hierarchy for credential broker errors.

Every failure surfaced by the vault, the credential store, the OAuth manager and
the API-key validator is a subclass of CredentialBrokerError and carries an error
code for programmatic handling.
"""

from enum import Enum
from typing import Any, Optional


class CredentialBrokerError(Exception):
    """Base exception for all credential broker errors.

    Attributes:
        message: Human-readable error description
        error_code: Unique code for programmatic error handling
        context: Additional context information
    """

    error_code: str = "CREDENTIAL_BROKER_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize error with message and optional context.

        Args:
            message: Human-readable error description
            **context: Additional context information (provider, status_code, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Return formatted error message with context."""
        if not self.context:
            return f"[{self.error_code}] {self.message}"

        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"[{self.error_code}] {self.message} ({context_str})"


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class VaultError(CredentialBrokerError):
    """Base exception for cipher vault failures."""

    error_code = "VAULT_ERROR"


class KeyUnavailableError(VaultError):
    """Raised when no usable master key is loaded."""

    error_code = "KEY_UNAVAILABLE"


class InvalidNonceError(VaultError):
    """Raised when a nonce is malformed or has the wrong length."""

    error_code = "INVALID_NONCE"

    def __init__(self, length: int, expected: int) -> None:
        super().__init__(
            f"Nonce must be {expected} bytes, got {length}", length=length, expected=expected
        )


class AuthenticationFailedError(VaultError):
    """Raised when ciphertext integrity verification fails.

    Covers tampered ciphertext, a wrong or regenerated master key, and corrupted
    storage. Plaintext is never returned in these cases.
    """

    error_code = "AUTHENTICATION_FAILED"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class NotFoundError(CredentialBrokerError):
    """Raised when no stored credential exists for a provider."""

    error_code = "NOT_FOUND"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No stored credentials for '{provider}'", provider=provider)


class CorruptRecordError(CredentialBrokerError):
    """Raised when a stored record cannot be decoded into credentials."""

    error_code = "CORRUPT_RECORD"


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthError(CredentialBrokerError):
    """Base exception for OAuth flow failures."""

    error_code = "OAUTH_ERROR"


class ConfigurationMissingError(OAuthError):
    """Raised when a provider has no config or lacks required client credentials."""

    error_code = "CONFIGURATION_MISSING"

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            f"OAuth configuration missing for '{provider}': {reason}",
            provider=provider,
        )


class UserCancelledError(OAuthError):
    """Raised when the user cancels the authorization in the user-agent."""

    error_code = "USER_CANCELLED"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Authorization for '{provider}' was cancelled", provider=provider)


class CallbackErrorCategory(str, Enum):
    """Provider-agnostic category for an ``error`` returned on the callback."""

    CANCELLED = "cancelled"
    CONFIGURATION = "configuration"
    FAILURE = "failure"


_CALLBACK_ERROR_CATEGORIES = {
    "access_denied": CallbackErrorCategory.CANCELLED,
    "invalid_request": CallbackErrorCategory.CONFIGURATION,
}


class CallbackError(OAuthError):
    """Raised when the provider rejected the authorization on the callback.

    Attributes:
        provider_error: The raw ``error`` value sent by the provider
        description: The ``error_description`` value, if any
        category: Mapped category for the error code
    """

    error_code = "CALLBACK_ERROR"

    def __init__(
        self, provider: str, provider_error: str, description: Optional[str] = None
    ) -> None:
        self.provider_error = provider_error
        self.description = description
        self.category = _CALLBACK_ERROR_CATEGORIES.get(
            provider_error, CallbackErrorCategory.FAILURE
        )
        message = f"Provider '{provider}' returned error '{provider_error}'"
        if description:
            message = f"{message}: {description}"
        super().__init__(message, provider=provider, category=self.category.value)


class InvalidCallbackError(OAuthError):
    """Raised when the callback URL carries neither a code nor an error."""

    error_code = "INVALID_CALLBACK"


class TokenExchangeFailedError(OAuthError):
    """Raised when the token endpoint rejects an authorization code."""

    error_code = "TOKEN_EXCHANGE_FAILED"

    def __init__(self, provider: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(
            f"Token exchange for '{provider}' failed with HTTP {status_code}",
            provider=provider,
            status_code=status_code,
        )


class NoRefreshTokenError(OAuthError):
    """Raised when stored OAuth credentials carry no refresh token."""

    error_code = "NO_REFRESH_TOKEN"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No refresh token stored for '{provider}'", provider=provider)


class RefreshFailedError(OAuthError):
    """Raised when a refresh-token exchange fails."""

    error_code = "REFRESH_FAILED"


class InvalidResponseError(CredentialBrokerError):
    """Raised when a provider returns HTTP 200 with an undecodable body."""

    error_code = "INVALID_RESPONSE"


class NetworkError(CredentialBrokerError):
    """Raised on transport failures or unexpected HTTP status codes."""

    error_code = "NETWORK_ERROR"


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class APIKeyError(CredentialBrokerError):
    """Base exception for API-key validation failures."""

    error_code = "API_KEY_ERROR"


class InvalidFormatError(APIKeyError):
    """Raised when a key fails the provider's local format check.

    Attributes:
        hint: Provider-specific guidance on the expected format
    """

    error_code = "INVALID_FORMAT"

    def __init__(self, provider: str, hint: str) -> None:
        self.hint = hint
        super().__init__(f"Invalid key format for '{provider}'. {hint}", provider=provider)


class InvalidCredentialsError(APIKeyError):
    """Raised when the provider rejects the key with HTTP 401 or 403."""

    error_code = "INVALID_CREDENTIALS"

    def __init__(self, provider: str, status_code: int, hint: str = "") -> None:
        self.status_code = status_code
        self.hint = hint
        message = f"'{provider}' rejected the supplied credentials"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message, provider=provider, status_code=status_code)
