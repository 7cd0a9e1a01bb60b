"""Encrypted credential store.

Persists, per provider name, an AES-GCM encrypted payload and a plaintext
metadata row. Plaintext secrets are never written. Each operation runs in a
single database transaction, so a concurrent reader sees either the previous
or the new record for a provider and never a mix of both.
"""

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from credbroker.errors import NotFoundError
from credbroker.integrations.credentials.encryption import CipherVault
from credbroker.integrations.credentials.models import (
    AuthKind,
    ConnectionStatus,
    Credentials,
    EncryptedRecord,
    ServiceMetadata,
    decode_credentials,
)
from credbroker.observability.logging import get_logger
from credbroker.storage.database import Database
from credbroker.storage.models import CredentialRecordModel, ServiceMetadataModel, utcnow

logger = get_logger(__name__)


def _insert_for(db: Database):
    """Return the dialect insert construct that supports ON CONFLICT upserts."""
    if db.engine.dialect.name == "postgresql":
        return postgresql_insert
    return sqlite_insert


def _to_metadata(row: ServiceMetadataModel) -> ServiceMetadata:
    return ServiceMetadata(
        service_name=row.service_name,
        authentication_type=AuthKind(row.authentication_type),
        created_at=row.created_at,
        last_updated=row.last_updated,
        connection_status=ConnectionStatus(row.connection_status),
    )


def _to_record(row: CredentialRecordModel) -> EncryptedRecord:
    return EncryptedRecord(
        service=row.service,
        auth_type=AuthKind(row.auth_type),
        encrypted_data=row.encrypted_data,
        iv=row.iv,
        created_at=row.created_at,
    )


class CredentialStore:
    """Stores encrypted credentials and connection metadata per provider.

    Example:
        >>> store = CredentialStore(db, vault)
        >>> await store.save_credentials("SendGrid", APIKeyCredentials(api_key="SG.x"))
        >>> credentials, metadata = await store.get_credentials("SendGrid")
    """

    def __init__(self, db: Database, vault: CipherVault) -> None:
        """Initialize the store.

        Args:
            db: Database holding the record and metadata tables
            vault: Vault used to encrypt and decrypt payloads
        """
        self._db = db
        self._vault = vault

    async def save(self, provider: str, kind: AuthKind, plaintext: bytes) -> ServiceMetadata:
        """Encrypt and persist a credential payload, replacing any previous one.

        Metadata is upserted with status ``connected``; its ``created_at`` is kept
        when the provider was already stored.

        Args:
            provider: Provider name
            kind: Auth kind tag used later to decode the payload
            plaintext: Serialized credentials

        Returns:
            The metadata as written
        """
        encrypted_data, iv = self._vault.encrypt_text(plaintext)
        now = utcnow()

        insert = _insert_for(self._db)

        async with self._db.session() as session:
            record_stmt = insert(CredentialRecordModel).values(
                service=provider,
                auth_type=kind.value,
                encrypted_data=encrypted_data,
                iv=iv,
                created_at=now,
            )
            await session.execute(
                record_stmt.on_conflict_do_update(
                    index_elements=[CredentialRecordModel.service],
                    set_={
                        "auth_type": record_stmt.excluded.auth_type,
                        "encrypted_data": record_stmt.excluded.encrypted_data,
                        "iv": record_stmt.excluded.iv,
                        "created_at": record_stmt.excluded.created_at,
                    },
                )
            )

            # created_at is only written on first insert
            metadata_stmt = insert(ServiceMetadataModel).values(
                service_name=provider,
                authentication_type=kind.value,
                created_at=now,
                last_updated=now,
                connection_status=ConnectionStatus.CONNECTED.value,
            )
            await session.execute(
                metadata_stmt.on_conflict_do_update(
                    index_elements=[ServiceMetadataModel.service_name],
                    set_={
                        "authentication_type": metadata_stmt.excluded.authentication_type,
                        "last_updated": metadata_stmt.excluded.last_updated,
                        "connection_status": metadata_stmt.excluded.connection_status,
                    },
                )
            )
            metadata = await session.get(ServiceMetadataModel, provider, populate_existing=True)
            result = _to_metadata(metadata)

        logger.info("credentials_saved", provider=provider, auth_type=kind.value)
        return result

    async def save_credentials(self, provider: str, credentials: Credentials) -> ServiceMetadata:
        """Serialize and persist OAuth or API-key credentials."""
        return await self.save(provider, credentials.auth_kind, credentials.to_bytes())

    async def get(self, provider: str) -> tuple[bytes, ServiceMetadata]:
        """Load and decrypt the payload stored for a provider.

        Args:
            provider: Provider name

        Returns:
            Tuple of (decrypted payload, metadata)

        Raises:
            NotFoundError: If the record or its metadata is missing
            VaultError: If the record cannot be decrypted
        """
        async with self._db.session() as session:
            metadata = await session.get(ServiceMetadataModel, provider)
            record = await session.get(CredentialRecordModel, provider)
            if metadata is None or record is None:
                raise NotFoundError(provider)
            meta = _to_metadata(metadata)
            encrypted_data, iv = record.encrypted_data, record.iv

        return self._vault.decrypt_text(encrypted_data, iv), meta

    async def get_credentials(self, provider: str) -> tuple[Credentials, ServiceMetadata]:
        """Load, decrypt and decode the credentials stored for a provider.

        Raises:
            NotFoundError: If nothing is stored for the provider
            VaultError: If the record cannot be decrypted
            CorruptRecordError: If the payload does not match its auth kind
        """
        payload, metadata = await self.get(provider)
        return decode_credentials(metadata.authentication_type, payload), metadata

    async def get_record(self, provider: str) -> EncryptedRecord:
        """Return the stored ciphertext record without decrypting it.

        Raises:
            NotFoundError: If no record is stored for the provider
        """
        async with self._db.session() as session:
            record = await session.get(CredentialRecordModel, provider)
            if record is None:
                raise NotFoundError(provider)
            return _to_record(record)

    async def get_metadata(self, provider: str) -> Optional[ServiceMetadata]:
        """Return the metadata for a provider, or None if absent."""
        async with self._db.session() as session:
            metadata = await session.get(ServiceMetadataModel, provider)
            return _to_metadata(metadata) if metadata is not None else None

    async def remove(self, provider: str) -> None:
        """Delete the record and metadata for a provider. No-op if absent."""
        async with self._db.session() as session:
            await session.execute(
                delete(CredentialRecordModel).where(CredentialRecordModel.service == provider)
            )
            await session.execute(
                delete(ServiceMetadataModel).where(ServiceMetadataModel.service_name == provider)
            )
        logger.info("credentials_removed", provider=provider)

    async def list_all(self) -> list[ServiceMetadata]:
        """Return metadata for every stored provider, newest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ServiceMetadataModel).order_by(ServiceMetadataModel.created_at.desc())
            )
            return [_to_metadata(row) for row in result.scalars().all()]

    async def is_connected(self, provider: str) -> bool:
        """Return True iff an encrypted record exists for the provider.

        A metadata row without a record does not count as connected.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(CredentialRecordModel.service).where(
                    CredentialRecordModel.service == provider
                )
            )
            return result.scalar_one_or_none() is not None

    async def update_status(self, provider: str, status: ConnectionStatus) -> None:
        """Set the connection status in metadata. No-op if no metadata exists."""
        async with self._db.session() as session:
            metadata = await session.get(ServiceMetadataModel, provider)
            if metadata is None:
                return
            metadata.connection_status = status.value
            metadata.last_updated = utcnow()
        logger.debug("status_updated", provider=provider, status=status.value)
