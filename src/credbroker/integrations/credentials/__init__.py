"""Credential encryption and storage.

This module provides the cipher vault holding the master key, the secret
stores the key lives in, and the encrypted per-provider credential store.
"""

from credbroker.integrations.credentials.encryption import CipherVault, generate_master_key
from credbroker.integrations.credentials.models import (
    APIKeyCredentials,
    AuthKind,
    ConnectionStatus,
    CredentialView,
    EncryptedRecord,
    OAuthCredentials,
    ServiceMetadata,
    mask_secret,
)
from credbroker.integrations.credentials.secret_store import (
    FileSecretStore,
    InMemorySecretStore,
    SecretStore,
)
from credbroker.integrations.credentials.store import CredentialStore

__all__ = [
    "CipherVault",
    "generate_master_key",
    "SecretStore",
    "InMemorySecretStore",
    "FileSecretStore",
    "CredentialStore",
    "AuthKind",
    "ConnectionStatus",
    "OAuthCredentials",
    "APIKeyCredentials",
    "EncryptedRecord",
    "ServiceMetadata",
    "CredentialView",
    "mask_secret",
]
