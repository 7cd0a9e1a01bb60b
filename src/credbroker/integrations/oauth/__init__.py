"""OAuth 2.0 authorization-code flow for integration providers."""

from credbroker.integrations.oauth.manager import (
    AuthorizationRequest,
    AuthState,
    OAuthManager,
    TokenResponse,
)
from credbroker.integrations.oauth.registry import (
    PendingAuthorization,
    PendingAuthorizations,
    ProviderConfig,
    ProviderRegistry,
    code_challenge,
    extract_auth_code,
    generate_code_verifier,
)
from credbroker.integrations.oauth.user_agent import (
    BrowserUserAgent,
    UserAgent,
    UserAgentResult,
)

__all__ = [
    "AuthState",
    "AuthorizationRequest",
    "BrowserUserAgent",
    "OAuthManager",
    "PendingAuthorization",
    "PendingAuthorizations",
    "ProviderConfig",
    "ProviderRegistry",
    "TokenResponse",
    "UserAgent",
    "UserAgentResult",
    "code_challenge",
    "extract_auth_code",
    "generate_code_verifier",
]
