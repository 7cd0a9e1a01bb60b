"""OAuth 2.0 flow manager.

This module drives the authorization-code flow for a provider: building the
authorization request, waiting on the user-agent, exchanging the code for
tokens, refreshing them, and checking stored credentials are still usable.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from credbroker.errors import (
    CallbackError,
    ConfigurationMissingError,
    CorruptRecordError,
    CredentialBrokerError,
    InvalidCallbackError,
    InvalidResponseError,
    NetworkError,
    NoRefreshTokenError,
    NotFoundError,
    RefreshFailedError,
    TokenExchangeFailedError,
    UserCancelledError,
    VaultError,
)
from credbroker.integrations.credentials.models import AuthKind, OAuthCredentials
from credbroker.integrations.credentials.store import CredentialStore
from credbroker.integrations.http import provider_client
from credbroker.integrations.oauth.registry import (
    ProviderConfig,
    ProviderRegistry,
    extract_auth_code,
    extract_callback_error,
    extract_callback_state,
    generate_state,
)
from credbroker.integrations.oauth.user_agent import UserAgent
from credbroker.observability.logging import get_logger

logger = get_logger(__name__)


class AuthState(str, Enum):
    """Lifecycle of one authorization attempt."""

    IDLE = "idle"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


StateObserver = Callable[[str, AuthState], None]


class AuthorizationRequest(BaseModel):
    """A started authorization attempt.

    Attributes:
        provider: Provider name
        state: Opaque state token correlating the callback
        authorization_url: URL to open in the user-agent
        config: Provider configuration used for the attempt
    """

    model_config = ConfigDict(frozen=True)

    provider: str
    state: str
    authorization_url: str
    config: ProviderConfig


class TokenResponse(BaseModel):
    """Token endpoint response body.

    Attributes:
        access_token: OAuth access token
        refresh_token: Optional refresh token
        token_type: Token type (usually "Bearer")
        expires_in: Token lifetime in seconds (optional)
        scope: Granted scope string (optional)
    """

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    def to_credentials(
        self, previous_refresh_token: Optional[str] = None, now: Optional[datetime] = None
    ) -> OAuthCredentials:
        """Build credentials, keeping ``previous_refresh_token`` when none was issued."""
        expires_at = None
        if self.expires_in is not None:
            expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=self.expires_in)
        return OAuthCredentials(
            access_token=self.access_token,
            refresh_token=self.refresh_token or previous_refresh_token,
            expires_at=expires_at,
            scope=self.scope,
        )


class OAuthManager:
    """Manages OAuth flows for providers.

    Example:
        >>> manager = OAuthManager(registry, store, user_agent=BrowserUserAgent())
        >>> credentials = await manager.authenticate("Google Calendar")
        >>> await manager.is_still_valid("Google Calendar")
        True
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: CredentialStore,
        user_agent: Optional[UserAgent] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
        observer: Optional[StateObserver] = None,
    ) -> None:
        """Initialize OAuth manager.

        Args:
            registry: Provider registry holding configs and pending attempts
            store: Credential store receiving issued tokens
            user_agent: Interactive session used by ``authenticate``
            http_client: Client for token endpoint calls; one is created per
                call if omitted
            timeout: Per-request timeout in seconds
            observer: Called with (provider, state) on every transition
        """
        self._registry = registry
        self._store = store
        self._user_agent = user_agent
        self._http_client = http_client
        self._timeout = timeout
        self._observer = observer
        self._states: dict[str, AuthState] = {}

    def state_of(self, provider: str) -> AuthState:
        """Return the state of the latest attempt for ``provider``."""
        return self._states.get(provider, AuthState.IDLE)

    def _transition(self, provider: str, state: AuthState, **context: object) -> None:
        self._states[provider] = state
        logger.info("oauth_state_changed", provider=provider, state=state.value, **context)
        if self._observer is not None:
            self._observer(provider, state)

    def _require_config(self, provider: str) -> ProviderConfig:
        config = self._registry.config_for(provider)
        if config is None:
            raise ConfigurationMissingError(provider, "no OAuth configuration")
        reason = config.missing_credentials()
        if reason is not None:
            raise ConfigurationMissingError(provider, reason)
        return config

    def begin_authorization(self, provider: str) -> AuthorizationRequest:
        """Start an attempt: resolve config, create ``state`` and the URL.

        Raises:
            ConfigurationMissingError: If the provider is unknown or its client
                credentials are missing
        """
        config = self._require_config(provider)
        self._registry.purge_expired_attempts()

        state = generate_state()
        url = self._registry.build_authorization_url(config, state)
        self._transition(provider, AuthState.AWAITING_USER_AUTHORIZATION, pkce=config.uses_pkce)
        return AuthorizationRequest(
            provider=provider, state=state, authorization_url=url, config=config
        )

    async def complete_authorization(
        self, request: AuthorizationRequest, callback_url: str
    ) -> OAuthCredentials:
        """Finish an attempt from the provider's callback URL and store the tokens.

        Args:
            request: Attempt returned by ``begin_authorization``
            callback_url: URL the user-agent was redirected to

        Returns:
            Credentials issued by the provider

        Raises:
            CallbackError: If the provider returned an ``error`` parameter
            InvalidCallbackError: If no code is present, the state does not
                match, or the attempt was already consumed
            TokenExchangeFailedError: If the token endpoint rejects the code
            InvalidResponseError: If the token body cannot be decoded
            NetworkError: If the token endpoint cannot be reached
        """
        provider = request.provider
        try:
            error = extract_callback_error(callback_url)
            if error is not None:
                raise CallbackError(provider, error[0], error[1])

            code = extract_auth_code(callback_url)
            if code is None:
                raise InvalidCallbackError(
                    "Callback URL carries no authorization code", provider=provider
                )

            callback_state = extract_callback_state(callback_url)
            if callback_state is not None and callback_state != request.state:
                raise InvalidCallbackError("Callback state does not match", provider=provider)

            entry = self._registry.pending.pop(request.state)
            if entry is None:
                raise InvalidCallbackError(
                    "Authorization attempt already completed or expired", provider=provider
                )

            self._transition(provider, AuthState.EXCHANGING_CODE)
            credentials = await self._exchange_code(request.config, code, entry.code_verifier)
            await self._store.save_credentials(provider, credentials)
        except CredentialBrokerError as e:
            self._registry.pending.discard(request.state)
            self._transition(provider, AuthState.FAILED, error_code=e.error_code)
            raise

        self._transition(provider, AuthState.AUTHENTICATED)
        return credentials

    async def authenticate(self, provider: str) -> OAuthCredentials:
        """Run a complete interactive authorization for ``provider``.

        Raises:
            ConfigurationMissingError: If the provider cannot be authorized
            UserCancelledError: If the user-agent reports cancellation
            CallbackError: If the provider rejected the authorization
        """
        if self._user_agent is None:
            raise ConfigurationMissingError(provider, "no user agent configured")

        request = self.begin_authorization(provider)
        try:
            result = await self._user_agent.authorize(
                request.authorization_url,
                request.config.callback_scheme,
                request.config.callback_host,
            )
        except (asyncio.CancelledError, Exception):
            self._registry.pending.discard(request.state)
            self._transition(provider, AuthState.FAILED, error_code="ABORTED")
            raise

        if result.cancelled or result.callback_url is None:
            self._registry.pending.discard(request.state)
            error = UserCancelledError(provider)
            self._transition(provider, AuthState.FAILED, error_code=error.error_code)
            raise error

        return await self.complete_authorization(request, result.callback_url)

    async def _post_token_request(
        self, config: ProviderConfig, data: dict[str, str]
    ) -> httpx.Response:
        async with provider_client(self._http_client, self._timeout) as client:
            return await client.post(
                config.token_url, data=data, headers={"Accept": "application/json"}
            )

    def _parse_tokens(self, provider: str, response: httpx.Response) -> TokenResponse:
        try:
            return TokenResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise InvalidResponseError(
                "Token endpoint returned an undecodable body", provider=provider
            ) from e

    async def _exchange_code(
        self, config: ProviderConfig, code: str, code_verifier: Optional[str]
    ) -> OAuthCredentials:
        """Exchange an authorization code for tokens.

        ``client_secret`` is sent only by confidential clients holding a real
        secret; ``code_verifier`` only when the attempt used PKCE.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
        }
        if config.sends_client_secret:
            data["client_secret"] = config.client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            response = await self._post_token_request(config, data)
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Token exchange request failed: {e}", provider=config.provider
            ) from e

        if response.status_code != 200:
            raise TokenExchangeFailedError(config.provider, response.status_code)

        return self._parse_tokens(config.provider, response).to_credentials()

    async def refresh_tokens(self, provider: str) -> OAuthCredentials:
        """Refresh the stored access token and persist the result.

        Stored credentials are left untouched when the refresh fails.

        Args:
            provider: Provider name

        Returns:
            The refreshed credentials

        Raises:
            NotFoundError: If nothing is stored for the provider
            ConfigurationMissingError: If the provider cannot be configured
            NoRefreshTokenError: If the stored credentials carry no refresh token
            RefreshFailedError: If the token endpoint call fails
        """
        credentials, _ = await self._store.get_credentials(provider)
        if not isinstance(credentials, OAuthCredentials) or not credentials.refresh_token:
            raise NoRefreshTokenError(provider)
        refresh_token = credentials.refresh_token
        config = self._require_config(provider)

        data = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "refresh_token": refresh_token,
        }
        if config.sends_client_secret:
            data["client_secret"] = config.client_secret

        try:
            response = await self._post_token_request(config, data)
        except httpx.HTTPError as e:
            raise RefreshFailedError(f"Token refresh request failed: {e}", provider=provider) from e

        if response.status_code != 200:
            raise RefreshFailedError(
                f"Token refresh failed with HTTP {response.status_code}",
                provider=provider,
                status_code=response.status_code,
            )

        try:
            tokens = self._parse_tokens(provider, response)
        except InvalidResponseError as e:
            raise RefreshFailedError(e.message, provider=provider) from e

        refreshed = tokens.to_credentials(previous_refresh_token=refresh_token)
        await self._store.save_credentials(provider, refreshed)
        logger.info("oauth_tokens_refreshed", provider=provider)
        return refreshed

    async def is_still_valid(self, provider: str) -> bool:
        """Return True if usable credentials are stored for ``provider``.

        Expired OAuth credentials get exactly one refresh attempt. When that
        fails, or the record cannot be decrypted or decoded, the stored
        credential is deleted and False is returned. API-key credentials are
        valid whenever they decode.
        """
        if not await self._store.is_connected(provider):
            return False

        try:
            credentials, metadata = await self._store.get_credentials(provider)
        except NotFoundError:
            return False
        except (VaultError, CorruptRecordError) as e:
            logger.warning(
                "stored_credentials_unreadable", provider=provider, error_code=e.error_code
            )
            await self._store.remove(provider)
            return False

        if metadata.authentication_type is AuthKind.API_KEY:
            return True

        if not credentials.is_expired():  # type: ignore[union-attr]
            return True

        try:
            await self.refresh_tokens(provider)
        except CredentialBrokerError as e:
            logger.warning("stale_credentials_removed", provider=provider, error_code=e.error_code)
            await self._store.remove(provider)
            return False
        return True
