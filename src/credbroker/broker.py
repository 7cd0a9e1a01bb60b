"""Credential broker facade.

Wires the vault, credential store, provider registry, OAuth manager and API-key
validator together and exposes the operations an application needs to connect,
inspect and disconnect provider integrations.
"""

import asyncio
import uuid
from typing import Optional

import httpx

from credbroker.config import BrokerSettings
from credbroker.errors import NotFoundError, UserCancelledError
from credbroker.integrations.apikey.validator import APIKeyValidator
from credbroker.integrations.credentials.encryption import CipherVault
from credbroker.integrations.credentials.models import (
    ConnectionStatus,
    CredentialView,
    OAuthCredentials,
    ServiceMetadata,
)
from credbroker.integrations.credentials.secret_store import SecretStore
from credbroker.integrations.credentials.store import CredentialStore
from credbroker.integrations.oauth.manager import OAuthManager, StateObserver
from credbroker.integrations.oauth.registry import ProviderRegistry
from credbroker.integrations.oauth.user_agent import UserAgent
from credbroker.observability.logging import clear_correlation_id, get_logger, set_correlation_id
from credbroker.storage.database import Database, DatabaseConfig

logger = get_logger(__name__)


class CredentialBroker:
    """Connects and manages provider credentials for an application.

    Example:
        >>> broker = await CredentialBroker.from_settings(
        ...     load_settings_from_env(), FileSecretStore("~/.credbroker"), BrowserUserAgent()
        ... )
        >>> await broker.connect_api_key("SendGrid", "SG.xxxxxxx.yyyyyyy")
        >>> await broker.list_services()
    """

    def __init__(
        self,
        store: CredentialStore,
        registry: ProviderRegistry,
        manager: OAuthManager,
        validator: APIKeyValidator,
        vault: CipherVault,
        db: Optional[Database] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.manager = manager
        self.validator = validator
        self.vault = vault
        self._db = db

    @classmethod
    async def from_settings(
        cls,
        settings: BrokerSettings,
        secret_store: SecretStore,
        user_agent: Optional[UserAgent] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        observer: Optional[StateObserver] = None,
    ) -> "CredentialBroker":
        """Build a broker, creating tables and loading the master key.

        Args:
            settings: Broker settings
            secret_store: Store holding the master key
            user_agent: Interactive session for OAuth; required by ``connect_oauth``
            http_client: Shared client for provider calls
            observer: Called on every OAuth state transition

        Raises:
            KeyUnavailableError: If the master key cannot be loaded or created
        """
        db = Database(DatabaseConfig(url=settings.database_url))
        await db.create_tables()

        vault = CipherVault.open(secret_store, settings.master_key_name)
        store = CredentialStore(db, vault)
        registry = ProviderRegistry(settings)
        manager = OAuthManager(
            registry,
            store,
            user_agent=user_agent,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
            observer=observer,
        )
        validator = APIKeyValidator(http_client=http_client, timeout=settings.http_timeout_seconds)
        return cls(store, registry, manager, validator, vault, db=db)

    async def _begin_connecting(self, provider: str) -> Optional[ConnectionStatus]:
        metadata = await self.store.get_metadata(provider)
        previous = metadata.connection_status if metadata is not None else None
        await self.store.update_status(provider, ConnectionStatus.CONNECTING)
        return previous

    async def _record_failure(
        self, provider: str, error: BaseException, previous: Optional[ConnectionStatus]
    ) -> None:
        logger.warning(
            "connect_failed",
            provider=provider,
            error_code=getattr(error, "error_code", type(error).__name__),
        )
        if isinstance(error, (UserCancelledError, asyncio.CancelledError)):
            if previous is not None:
                await self.store.update_status(provider, previous)
            return
        await self.store.update_status(provider, ConnectionStatus.ERROR)

    async def connect_oauth(self, provider: str) -> ServiceMetadata:
        """Authorize ``provider`` interactively and store its tokens.

        On failure the connection is marked ``error``. A cancelled attempt
        restores the status the connection had before.

        Returns:
            Metadata of the stored connection
        """
        set_correlation_id(str(uuid.uuid4()))
        try:
            previous = await self._begin_connecting(provider)
            try:
                await self.manager.authenticate(provider)
                return await self._require_metadata(provider)
            except (asyncio.CancelledError, Exception) as e:
                await self._record_failure(provider, e, previous)
                raise
        finally:
            clear_correlation_id()

    async def connect_api_key(self, provider: str, key: str) -> ServiceMetadata:
        """Validate ``key`` for ``provider`` and store it.

        Returns:
            Metadata of the stored connection
        """
        set_correlation_id(str(uuid.uuid4()))
        try:
            previous = await self._begin_connecting(provider)
            try:
                credentials = await self.validator.validate(provider, key)
                return await self.store.save_credentials(provider, credentials)
            except (asyncio.CancelledError, Exception) as e:
                await self._record_failure(provider, e, previous)
                raise
        finally:
            clear_correlation_id()

    async def _require_metadata(self, provider: str) -> ServiceMetadata:
        metadata = await self.store.get_metadata(provider)
        if metadata is None:
            raise NotFoundError(provider)
        return metadata

    async def disconnect(self, provider: str) -> None:
        """Delete stored credentials for ``provider``.

        Tokens are not revoked at the provider.
        """
        await self.store.remove(provider)

    async def list_services(self) -> list[ServiceMetadata]:
        return await self.store.list_all()

    async def is_connected(self, provider: str) -> bool:
        return await self.store.is_connected(provider)

    async def is_still_valid(self, provider: str) -> bool:
        return await self.manager.is_still_valid(provider)

    async def refresh(self, provider: str) -> OAuthCredentials:
        return await self.manager.refresh_tokens(provider)

    async def view(self, provider: str) -> CredentialView:
        """Return a masked view of the credentials stored for ``provider``.

        Raises:
            NotFoundError: If nothing is stored for the provider
            VaultError: If the record cannot be decrypted
        """
        credentials, metadata = await self.store.get_credentials(provider)
        return CredentialView.build(credentials, metadata)

    async def regenerate_master_key(self) -> list[str]:
        """Replace the master key and drop every credential encrypted under the old one.

        Returns:
            Providers that must be connected again
        """
        services = [metadata.service_name for metadata in await self.store.list_all()]
        self.vault.regenerate_key()
        for provider in services:
            await self.store.remove(provider)
        logger.warning("credentials_invalidated", count=len(services))
        return services

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
