"""API-key validation.

Each known provider has a local format rule and a read-only identity endpoint.
A key is accepted only after the format check passes and the endpoint answers
HTTP 200 to a request authenticated with it. Unrecognized providers are
accepted without a network call and marked ``unverified``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

import httpx

from credbroker.errors import (
    InvalidCredentialsError,
    InvalidFormatError,
    InvalidResponseError,
    NetworkError,
)
from credbroker.integrations.credentials.models import APIKeyCredentials
from credbroker.integrations.http import provider_client
from credbroker.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyFormat:
    """Local format rules for a key."""

    prefixes: tuple[str, ...] = ()
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    delimiter: Optional[str] = None  # composite "left<delimiter>right" keys
    hint: str = ""

    def check(self, provider: str, value: str) -> tuple[str, str]:
        """Check ``value`` and split it into its two credential parts.

        Simple keys return ``(key, "")``.

        Raises:
            InvalidFormatError: If any rule is violated
        """
        if not value:
            raise InvalidFormatError(provider, self.hint or "API key must not be blank")

        if self.delimiter is not None:
            parts = value.split(self.delimiter)
            if len(parts) != 2 or not all(part.strip() for part in parts):
                raise InvalidFormatError(provider, self.hint)
            return parts[0].strip(), parts[1].strip()

        if self.prefixes and not value.startswith(self.prefixes):
            raise InvalidFormatError(provider, self.hint)
        if self.min_length and len(value) < self.min_length:
            raise InvalidFormatError(provider, self.hint)
        if self.max_length and len(value) > self.max_length:
            raise InvalidFormatError(provider, self.hint)
        return value, ""


@dataclass(frozen=True)
class APIKeyProvider:
    """Validation rules and identity endpoint for one API-key provider.

    Attributes:
        name: Provider name as shown to the user
        key_format: Local format rules
        identity_url: Read-only endpoint; ``{username}`` is replaced by the
            first credential part
        auth_scheme: ``bearer`` sends the key as a token, ``basic`` sends the
            two credential parts as username and password
        identity_field: JSON field holding an identity fact, if any
        rejection_hint: Guidance shown when the provider rejects the key
    """

    name: str
    key_format: KeyFormat
    identity_url: str
    auth_scheme: Literal["bearer", "basic"] = "bearer"
    identity_field: Optional[str] = None
    rejection_hint: str = ""
    extra_headers: dict[str, str] = field(default_factory=dict)


SENDGRID = APIKeyProvider(
    name="SendGrid",
    key_format=KeyFormat(
        prefixes=("SG.",),
        min_length=20,
        max_length=100,
        hint="SendGrid API keys start with 'SG.' (e.g. SG.xxxxxxx.yyyyyyy).",
    ),
    identity_url="https://api.sendgrid.com/v3/user/email",
    auth_scheme="bearer",
    identity_field="email",
    rejection_hint="Check the key exists under Settings > API Keys and has user read access.",
)

TWILIO = APIKeyProvider(
    name="Twilio",
    key_format=KeyFormat(
        delimiter=":",
        hint="Enter your Twilio credentials as AccountSID:AuthToken.",
    ),
    identity_url="https://api.twilio.com/2010-04-01/Accounts/{username}.json",
    auth_scheme="basic",
    identity_field="friendly_name",
    rejection_hint="The Account SID and Auth Token are on the Twilio Console dashboard.",
)

STRIPE = APIKeyProvider(
    name="Stripe",
    key_format=KeyFormat(
        prefixes=("sk_", "rk_"),
        min_length=20,
        max_length=255,
        hint="Stripe secret keys start with 'sk_' (restricted keys with 'rk_').",
    ),
    identity_url="https://api.stripe.com/v1/account",
    auth_scheme="basic",
    identity_field="email",
    rejection_hint="Use a secret or restricted key from Developers > API Keys.",
)

DEFAULT_PROVIDERS = (SENDGRID, TWILIO, STRIPE)


class APIKeyValidator:
    """Validates API keys before they are stored.

    Example:
        >>> validator = APIKeyValidator()
        >>> credentials = await validator.validate("SendGrid", "SG.xxxxxxx.yyyyyyy")
        >>> credentials.additional_data["email"]
        'ops@example.com'
    """

    def __init__(
        self,
        providers: tuple[APIKeyProvider, ...] = DEFAULT_PROVIDERS,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ) -> None:
        """Initialize validator.

        Args:
            providers: Providers validated against a live endpoint
            http_client: Client for identity calls; one is created per call if omitted
            timeout: Per-request timeout in seconds
        """
        self._providers = {provider.name: provider for provider in providers}
        self._http_client = http_client
        self._timeout = timeout

    def register(self, provider: APIKeyProvider) -> None:
        """Add or override a provider's validation rules."""
        self._providers[provider.name] = provider

    def is_verified_provider(self, provider: str) -> bool:
        """Return True if keys for ``provider`` are checked against the provider."""
        return provider in self._providers

    async def validate(self, provider: str, key: str) -> APIKeyCredentials:
        """Validate a key and return the credentials to store.

        Args:
            provider: Provider name
            key: Key as entered by the user

        Returns:
            Credentials carrying the trimmed key plus identity facts

        Raises:
            InvalidFormatError: If the key fails the local format check
            InvalidCredentialsError: If the provider rejects the key
            InvalidResponseError: If the identity endpoint returns a non-JSON body
            NetworkError: On transport failures or unexpected HTTP status
        """
        value = key.strip()
        rule = self._providers.get(provider)
        if rule is None:
            return self._accept_unverified(provider, value)

        username, password = rule.key_format.check(provider, value)
        body = await self._fetch_identity(rule, value, username, password)

        additional_data = {"validated_at": datetime.now(timezone.utc).isoformat()}
        fact = body.get(rule.identity_field) if rule.identity_field else None
        if isinstance(fact, str) and fact:
            additional_data[rule.identity_field] = fact  # type: ignore[index]

        api_key = value if rule.key_format.delimiter is None else (
            f"{username}{rule.key_format.delimiter}{password}"
        )
        logger.info("api_key_validated", provider=provider)
        return APIKeyCredentials(api_key=api_key, additional_data=additional_data)

    def _accept_unverified(self, provider: str, value: str) -> APIKeyCredentials:
        if not value:
            raise InvalidFormatError(provider, "API key must not be blank.")
        logger.warning("api_key_accepted_unverified", provider=provider)
        return APIKeyCredentials(api_key=value, additional_data={"unverified": "true"})

    async def _fetch_identity(
        self, rule: APIKeyProvider, value: str, username: str, password: str
    ) -> dict[str, Any]:
        url = rule.identity_url.format(username=username)
        headers = {"Accept": "application/json", **rule.extra_headers}
        auth: Optional[httpx.BasicAuth] = None
        if rule.auth_scheme == "bearer":
            headers["Authorization"] = f"Bearer {value}"
        else:
            auth = httpx.BasicAuth(username, password)

        try:
            async with provider_client(self._http_client, self._timeout) as client:
                response = await client.get(url, headers=headers, auth=auth)
        except httpx.HTTPError as e:
            raise NetworkError(f"Validation request failed: {e}", provider=rule.name) from e

        if response.status_code in (401, 403):
            raise InvalidCredentialsError(rule.name, response.status_code, rule.rejection_hint)
        if response.status_code != 200:
            raise NetworkError(
                f"Unexpected HTTP {response.status_code} from identity endpoint",
                provider=rule.name,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponseError(
                "Identity endpoint returned an undecodable body", provider=rule.name
            ) from e
        return body if isinstance(body, dict) else {}
