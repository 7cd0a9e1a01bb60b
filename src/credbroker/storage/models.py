"""SQLAlchemy ORM models for persistence.

Two tables back the credential store: one row per provider holding the
encrypted payload, and one row per provider holding plaintext, non-sensitive
metadata about the connection.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from credbroker.storage.base_model import Base


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CredentialRecordModel(Base):
    """ORM model for an encrypted credential record.

    Attributes:
        service: Provider name (primary key)
        auth_type: Authentication kind tag ("oauth" or "api_key")
        encrypted_data: Base64 AES-GCM ciphertext including the tag
        iv: Base64 nonce used for this encryption
        created_at: Time this ciphertext was written
    """

    __tablename__ = "credential_records"

    service: Mapped[str] = mapped_column(String(255), primary_key=True)
    auth_type: Mapped[str] = mapped_column(String(20), nullable=False)
    encrypted_data: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ServiceMetadataModel(Base):
    """ORM model for plaintext connection metadata.

    Attributes:
        service_name: Provider name (primary key)
        authentication_type: Authentication kind tag
        created_at: First time the provider was connected
        last_updated: Last save or status change
        connection_status: disconnected, connecting, connected or error
    """

    __tablename__ = "service_metadata"

    service_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    authentication_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    connection_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="disconnected"
    )

    __table_args__ = (Index("idx_service_metadata_created", "created_at"),)
