"""Credential payloads, persisted record formats and masked views.

OAuth and API-key credentials share one storage slot per provider. The slot is
tagged with an AuthKind and decoding always dispatches on that tag. The
persisted JSON shapes use camelCase keys and must round-trip exactly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from credbroker.errors import CorruptRecordError


class AuthKind(str, Enum):
    """How a provider authenticates."""

    OAUTH = "oauth"
    API_KEY = "api_key"


class ConnectionStatus(str, Enum):
    """Connection status shown for a provider."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on the way back, so naive values are taken as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def mask_secret(secret: str) -> str:
    """Mask a secret for display, keeping the first and last four characters.

    Args:
        secret: Token or key to mask

    Returns:
        ``"abcd***wxyz"``, or ``"***"`` for secrets of eight characters or fewer
    """
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}***{secret[-4:]}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_json(self) -> str:
        """Serialize using the persisted camelCase field names."""
        return self.model_dump_json(by_alias=True)

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")


class OAuthCredentials(_CamelModel):
    """Tokens obtained from an OAuth token endpoint.

    Attributes:
        access_token: Bearer access token
        refresh_token: Refresh token, if the provider issued one
        expires_at: Absolute expiry instant (UTC), if known
        scope: Granted scope string, if returned
    """

    auth_kind: ClassVar[AuthKind] = AuthKind.OAUTH

    access_token: str = Field(alias="accessToken", repr=False)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", repr=False)
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    scope: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Store expiry instants as aware UTC datetimes."""
        return as_utc(value) if value is not None else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return True if ``expires_at`` is known and in the past."""
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.now(timezone.utc))

    def masked(self) -> dict[str, str]:
        """Return display-safe fields with tokens masked."""
        fields = {"access_token": mask_secret(self.access_token)}
        if self.refresh_token:
            fields["refresh_token"] = mask_secret(self.refresh_token)
        if self.expires_at:
            fields["expires_at"] = self.expires_at.isoformat()
        if self.scope:
            fields["scope"] = self.scope
        return fields


class APIKeyCredentials(_CamelModel):
    """A validated API key plus provider-supplied facts about it.

    Attributes:
        api_key: The key or composite key/secret string
        additional_data: Auxiliary facts such as the resolved account name
    """

    auth_kind: ClassVar[AuthKind] = AuthKind.API_KEY

    api_key: str = Field(alias="apiKey", repr=False)
    additional_data: dict[str, str] = Field(default_factory=dict, alias="additionalData")

    @field_validator("additional_data", mode="before")
    @classmethod
    def default_additional_data(cls, value: Optional[dict[str, str]]) -> dict[str, str]:
        """Accept a null ``additionalData`` from older records."""
        return value or {}

    @property
    def unverified(self) -> bool:
        """True when the key was accepted without a live provider check."""
        return self.additional_data.get("unverified") == "true"

    def masked(self) -> dict[str, str]:
        """Return display-safe fields with the key masked."""
        fields = {"api_key": mask_secret(self.api_key)}
        fields.update(sorted(self.additional_data.items()))
        return fields


Credentials = Union[OAuthCredentials, APIKeyCredentials]

_CREDENTIAL_TYPES: dict[AuthKind, type[_CamelModel]] = {
    AuthKind.OAUTH: OAuthCredentials,
    AuthKind.API_KEY: APIKeyCredentials,
}


def decode_credentials(kind: AuthKind, data: bytes) -> Credentials:
    """Decode a decrypted payload using the record's auth-kind tag.

    Args:
        kind: Auth kind stored in the service metadata
        data: Decrypted JSON payload

    Returns:
        OAuthCredentials or APIKeyCredentials, as selected by ``kind``

    Raises:
        CorruptRecordError: If the payload does not match the tagged type
    """
    model = _CREDENTIAL_TYPES[AuthKind(kind)]
    try:
        return model.model_validate_json(data)  # type: ignore[return-value]
    except ValidationError as e:
        raise CorruptRecordError(
            f"Stored payload is not valid {kind.value} credentials", kind=kind.value
        ) from e


class EncryptedRecord(_CamelModel):
    """Persisted ciphertext for one provider.

    JSON shape: ``{service, authType, encryptedData, iv, createdAt}``.
    """

    service: str
    auth_type: AuthKind = Field(alias="authType")
    encrypted_data: str = Field(alias="encryptedData")
    iv: str
    created_at: datetime = Field(alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def normalize_created(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "EncryptedRecord":
        return cls.model_validate_json(raw)


class ServiceMetadata(_CamelModel):
    """Plaintext metadata for one provider connection.

    JSON shape: ``{serviceName, authenticationType, createdAt, lastUpdated,
    connectionStatus}``.
    """

    service_name: str = Field(alias="serviceName")
    authentication_type: AuthKind = Field(alias="authenticationType")
    created_at: datetime = Field(alias="createdAt")
    last_updated: datetime = Field(alias="lastUpdated")
    connection_status: ConnectionStatus = Field(alias="connectionStatus")

    @field_validator("created_at", "last_updated")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "ServiceMetadata":
        return cls.model_validate_json(raw)


class CredentialView(BaseModel):
    """Masked, display-safe view of a stored credential."""

    service_name: str
    auth_type: AuthKind
    connection_status: ConnectionStatus
    created_at: datetime
    last_updated: datetime
    fields: dict[str, str]

    @classmethod
    def build(cls, credentials: Credentials, metadata: ServiceMetadata) -> "CredentialView":
        """Build a view from decrypted credentials and their metadata."""
        return cls(
            service_name=metadata.service_name,
            auth_type=metadata.authentication_type,
            connection_status=metadata.connection_status,
            created_at=metadata.created_at,
            last_updated=metadata.last_updated,
            fields=credentials.masked(),
        )
