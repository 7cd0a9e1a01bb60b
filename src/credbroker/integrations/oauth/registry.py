"""OAuth provider registry.

Static per-provider configuration, scope resolution, authorization URL
construction (including PKCE) and the short-lived table correlating a
``state`` token with its PKCE code verifier.
"""

import base64
import hashlib
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import BaseModel, ConfigDict, Field

from credbroker.config import BrokerSettings
from credbroker.integrations.credentials.models import AuthKind
from credbroker.observability.logging import get_logger

logger = get_logger(__name__)

# RFC 7636 section 4.1 unreserved characters
_UNRESERVED = string.ascii_letters + string.digits + "-._~"
CODE_VERIFIER_LENGTH = 128

_PLACEHOLDER_PREFIXES = ("your_", "your-")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_AUTHORIZE_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

_GOOGLE_CLIENT_SUFFIX = ".apps.googleusercontent.com"

# provider name -> (identity provider, scopes)
_OAUTH_PRODUCTS: dict[str, tuple[str, tuple[str, ...]]] = {
    "Google Calendar": ("google", ("https://www.googleapis.com/auth/calendar",)),
    "Google Sheets": ("google", ("https://www.googleapis.com/auth/spreadsheets",)),
    "Google Drive": ("google", ("https://www.googleapis.com/auth/drive",)),
    "Google Gmail": ("google", ("https://www.googleapis.com/auth/gmail.send",)),
    "Office 365 Calendar": (
        "microsoft",
        ("https://graph.microsoft.com/Calendars.ReadWrite", "offline_access"),
    ),
    "Office 365 Mail": (
        "microsoft",
        ("https://graph.microsoft.com/Mail.Send", "offline_access"),
    ),
    "OneDrive": (
        "microsoft",
        ("https://graph.microsoft.com/Files.ReadWrite", "offline_access"),
    ),
}


def is_placeholder(value: str) -> bool:
    """Return True for template values such as ``YOUR_GOOGLE_CLIENT_ID``."""
    return value.strip().lower().startswith(_PLACEHOLDER_PREFIXES)


class ProviderConfig(BaseModel):
    """OAuth configuration for one provider.

    Attributes:
        provider: Provider name (e.g., "Google Calendar")
        client_id: OAuth client ID
        client_secret: OAuth client secret, empty for public clients
        authorize_url: Provider's authorization endpoint URL
        token_url: Provider's token endpoint URL
        scopes: Scopes to request
        redirect_uri: Redirect target registered with the provider
        callback_scheme: URL scheme the callback must use
        callback_host: Host the callback must use, if restricted
        is_public_client: Client cannot keep a secret (mobile/desktop app)
        pkce_exempt: Public client whose provider does not accept PKCE
    """

    model_config = ConfigDict(frozen=True)

    provider: str
    client_id: str
    client_secret: str = Field(default="", repr=False)
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...] = ()
    redirect_uri: str
    callback_scheme: str
    callback_host: Optional[str] = None
    is_public_client: bool = False
    pkce_exempt: bool = False

    @property
    def uses_pkce(self) -> bool:
        return self.is_public_client and not self.pkce_exempt

    @property
    def sends_client_secret(self) -> bool:
        """Confidential client with a real (non-empty, non-placeholder) secret."""
        return (
            not self.is_public_client
            and bool(self.client_secret)
            and not is_placeholder(self.client_secret)
        )

    def missing_credentials(self) -> Optional[str]:
        """Describe missing client credentials, or return None if usable."""
        if not self.client_id or is_placeholder(self.client_id):
            return "client id is not configured"
        if not self.is_public_client and not self.sends_client_secret:
            return "client secret is not configured"
        return None

    def matches_callback(self, url: str) -> bool:
        """Return True if ``url`` uses this provider's callback scheme and host."""
        parts = urlsplit(url)
        if parts.scheme.lower() != self.callback_scheme.lower():
            return False
        if self.callback_host is not None:
            return (parts.hostname or "").lower() == self.callback_host.lower()
        return True


@dataclass
class PendingAuthorization:
    """Correlation entry for one in-flight authorization attempt."""

    state: str
    provider: str
    code_verifier: Optional[str] = field(default=None, repr=False)
    created_at: float = field(default_factory=time.monotonic)


class PendingAuthorizations:
    """Table of in-flight attempts keyed by ``state``.

    Entries are consumed exactly once by ``pop`` and dropped by ``discard`` on
    cancellation or failure; ``purge_expired`` removes abandoned ones.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    def put(self, entry: PendingAuthorization) -> None:
        with self._lock:
            self._entries[entry.state] = entry

    def pop(self, state: str) -> Optional[PendingAuthorization]:
        """Remove and return the entry for ``state``; None if already consumed."""
        with self._lock:
            return self._entries.pop(state, None)

    def discard(self, state: str) -> None:
        with self._lock:
            self._entries.pop(state, None)

    def get_verifier(self, state: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(state)
            return entry.code_verifier if entry else None

    def purge_expired(self, max_age_seconds: float) -> int:
        """Drop entries older than ``max_age_seconds``.

        Returns:
            Number of entries removed
        """
        cutoff = time.monotonic() - max_age_seconds
        with self._lock:
            expired = [s for s, e in self._entries.items() if e.created_at < cutoff]
            for state in expired:
                del self._entries[state]
        return len(expired)

    def __contains__(self, state: object) -> bool:
        with self._lock:
            return state in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def generate_state() -> str:
    """Generate an opaque, URL-safe state token."""
    return secrets.token_urlsafe(32)


def generate_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    """Generate a PKCE code verifier from the unreserved URL-safe alphabet."""
    return "".join(secrets.choice(_UNRESERVED) for _ in range(length))


def code_challenge(verifier: str) -> str:
    """Derive the S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def extract_auth_code(callback_url: str) -> Optional[str]:
    """Extract the authorization code from a callback URL.

    Tries the ``code`` query parameter, then a ``code`` fragment parameter,
    then a ``code`` path segment followed by its value.

    Args:
        callback_url: URL the user-agent was redirected to

    Returns:
        The authorization code, or None if the URL carries none
    """
    parts = urlsplit(callback_url)

    code = parse_qs(parts.query).get("code", [None])[0]
    if code:
        return code

    code = parse_qs(parts.fragment).get("code", [None])[0]
    if code:
        return code

    segments = [s for s in parts.path.split("/") if s]
    for index, segment in enumerate(segments[:-1]):
        if segment == "code":
            return segments[index + 1]

    return None


def extract_callback_error(callback_url: str) -> Optional[tuple[str, Optional[str]]]:
    """Return ``(error, error_description)`` from the callback query, if present."""
    params = parse_qs(urlsplit(callback_url).query)
    error = params.get("error", [None])[0]
    if not error:
        return None
    return error, params.get("error_description", [None])[0]


def extract_callback_state(callback_url: str) -> Optional[str]:
    """Return the ``state`` parameter from the callback query or fragment."""
    parts = urlsplit(callback_url)
    values = parse_qs(parts.query).get("state") or parse_qs(parts.fragment).get("state")
    return values[0] if values else None


class ProviderRegistry:
    """Resolves provider configuration and builds authorization URLs.

    Example:
        >>> registry = ProviderRegistry(BrokerSettings(google_client_id="..."))
        >>> config = registry.config_for("Google Drive")
        >>> url = registry.build_authorization_url(config, generate_state())
    """

    def __init__(
        self,
        settings: BrokerSettings,
        pending: Optional[PendingAuthorizations] = None,
    ) -> None:
        """Initialize registry.

        Args:
            settings: Broker settings supplying client ids and secrets
            pending: Correlation table; a new one is created if omitted
        """
        self._settings = settings
        self._custom: dict[str, ProviderConfig] = {}
        self.pending = pending or PendingAuthorizations()

    def register(self, config: ProviderConfig) -> None:
        """Add or override a provider configuration."""
        self._custom[config.provider] = config

    def providers(self) -> list[str]:
        """Return every provider name with an OAuth configuration."""
        return list(_OAUTH_PRODUCTS) + [p for p in self._custom if p not in _OAUTH_PRODUCTS]

    def auth_kind_for(self, provider: str) -> AuthKind:
        """Return OAuth for providers with a config, API key for the rest."""
        if self.config_for(provider) is not None:
            return AuthKind.OAUTH
        return AuthKind.API_KEY

    def scopes_for(self, provider: str) -> list[str]:
        """Return the scopes requested for a provider's sub-product."""
        if provider in self._custom:
            return list(self._custom[provider].scopes)
        product = _OAUTH_PRODUCTS.get(provider)
        return list(product[1]) if product else []

    def config_for(self, provider: str) -> Optional[ProviderConfig]:
        """Return the configuration for a provider, or None if unknown."""
        if provider in self._custom:
            return self._custom[provider]

        product = _OAUTH_PRODUCTS.get(provider)
        if product is None:
            return None

        identity_provider, scopes = product
        if identity_provider == "google":
            return self._google_config(provider, scopes)
        return self._microsoft_config(provider, scopes)

    def _google_config(self, provider: str, scopes: tuple[str, ...]) -> ProviderConfig:
        client_id = self._settings.google_client_id
        # Installed-app clients receive callbacks on the reversed client id scheme
        if client_id.endswith(_GOOGLE_CLIENT_SUFFIX):
            scheme = "com.googleusercontent.apps." + client_id[: -len(_GOOGLE_CLIENT_SUFFIX)]
        else:
            scheme = self._settings.callback_scheme
        return ProviderConfig(
            provider=provider,
            client_id=client_id,
            client_secret="",
            authorize_url=GOOGLE_AUTHORIZE_URL,
            token_url=GOOGLE_TOKEN_URL,
            scopes=scopes,
            redirect_uri=f"{scheme}:/oauth2redirect",
            callback_scheme=scheme,
            is_public_client=True,
        )

    def _microsoft_config(self, provider: str, scopes: tuple[str, ...]) -> ProviderConfig:
        scheme = self._settings.callback_scheme
        return ProviderConfig(
            provider=provider,
            client_id=self._settings.microsoft_client_id,
            client_secret=self._settings.microsoft_client_secret,
            authorize_url=MICROSOFT_AUTHORIZE_URL,
            token_url=MICROSOFT_TOKEN_URL,
            scopes=scopes,
            redirect_uri=f"{scheme}://oauth/callback",
            callback_scheme=scheme,
            callback_host="oauth",
            is_public_client=True,
        )

    def build_authorization_url(self, config: ProviderConfig, state: str) -> str:
        """Build the authorization URL and register the attempt under ``state``.

        PKCE-eligible public clients get a fresh code verifier stored by
        ``state`` and an S256 ``code_challenge``. Google clients additionally
        request offline access with forced consent so a refresh token is issued.

        Args:
            config: Provider configuration
            state: Opaque per-attempt state token

        Returns:
            Authorization URL to open in the user-agent
        """
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "state": state,
        }

        verifier = None
        if config.uses_pkce:
            verifier = generate_code_verifier()
            params["code_challenge"] = code_challenge(verifier)
            params["code_challenge_method"] = "S256"

        if "googleusercontent" in config.client_id:
            params["access_type"] = "offline"
            params["prompt"] = "consent"

        self.pending.put(
            PendingAuthorization(state=state, provider=config.provider, code_verifier=verifier)
        )

        separator = "&" if "?" in config.authorize_url else "?"
        return f"{config.authorize_url}{separator}{urlencode(params)}"

    def purge_expired_attempts(self) -> int:
        """Drop pending attempts older than the configured state TTL."""
        removed = self.pending.purge_expired(self._settings.state_ttl_seconds)
        if removed:
            logger.info("pending_authorizations_purged", count=removed)
        return removed
