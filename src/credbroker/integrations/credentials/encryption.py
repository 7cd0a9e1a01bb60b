"""Credential encryption using AES-256-GCM under a single master key.

The master key lives in an external secret store. It is loaded (or generated
and stored) once, then held only by the CipherVault. Every encryption draws a
fresh random 96-bit nonce; nonce reuse under one key would break both
confidentiality and integrity of GCM.

Security Note:
    Never log plaintext, ciphertext, nonces or key material.
"""

import base64
import binascii
import os
import secrets
import threading
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from credbroker.errors import AuthenticationFailedError, InvalidNonceError, KeyUnavailableError
from credbroker.integrations.credentials.secret_store import SecretStore
from credbroker.observability.logging import get_logger

logger = get_logger(__name__)

NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16

DEFAULT_MASTER_KEY_NAME = "credbroker.master_key"


class CipherVault:
    """Authenticated encryption of credential payloads under the master key.

    Example:
        >>> vault = CipherVault(InMemorySecretStore())
        >>> vault.load_key()
        >>> ciphertext, nonce = vault.encrypt(b"my_secret_token")
        >>> vault.decrypt(ciphertext, nonce)
        b'my_secret_token'
    """

    def __init__(
        self, secret_store: SecretStore, key_name: str = DEFAULT_MASTER_KEY_NAME
    ) -> None:
        """Initialize the vault. No key is loaded until ``load_key()`` runs.

        Args:
            secret_store: Store holding the master key
            key_name: Name of the master key in the store
        """
        self._secret_store = secret_store
        self._key_name = key_name
        self._cipher: Optional[AESGCM] = None
        self._lock = threading.Lock()

    @classmethod
    def open(
        cls, secret_store: SecretStore, key_name: str = DEFAULT_MASTER_KEY_NAME
    ) -> "CipherVault":
        """Create a vault and load its master key."""
        vault = cls(secret_store, key_name)
        vault.load_key()
        return vault

    @property
    def is_loaded(self) -> bool:
        return self._cipher is not None

    def load_key(self) -> None:
        """Load the master key from the secret store, generating it if absent.

        Runs once per vault; later calls reuse the in-memory key.

        Raises:
            KeyUnavailableError: If the stored key is malformed or a new key
                cannot be persisted
        """
        with self._lock:
            if self._cipher is not None:
                return

            key = self._secret_store.get(self._key_name)
            if key is None:
                key = self._generate_and_store()
                logger.info("master_key_generated", key_name=self._key_name)
            elif len(key) != KEY_LENGTH:
                raise KeyUnavailableError(
                    f"Stored master key must be {KEY_LENGTH} bytes",
                    key_name=self._key_name,
                )
            else:
                logger.debug("master_key_loaded", key_name=self._key_name)

            self._cipher = AESGCM(key)

    def regenerate_key(self) -> None:
        """Replace the master key with a newly generated one.

        Every record encrypted under the previous key becomes permanently
        undecryptable; callers must re-authenticate all providers afterwards.

        Raises:
            KeyUnavailableError: If the new key cannot be persisted
        """
        with self._lock:
            key = self._generate_and_store()
            # Single rebinding: in-flight calls keep the cipher they already read
            self._cipher = AESGCM(key)
        logger.warning("master_key_regenerated", key_name=self._key_name)

    def _generate_and_store(self) -> bytes:
        key = generate_master_key()
        try:
            self._secret_store.put(self._key_name, key)
        except Exception as e:
            raise KeyUnavailableError(
                f"Failed to persist master key: {e}", key_name=self._key_name
            ) from e
        return key

    def _current_cipher(self) -> AESGCM:
        cipher = self._cipher
        if cipher is None:
            raise KeyUnavailableError("No master key loaded", key_name=self._key_name)
        return cipher

    def encrypt(self, plaintext: bytes) -> tuple[bytes, bytes]:
        """Encrypt a payload under a fresh nonce.

        Args:
            plaintext: Data to encrypt

        Returns:
            Tuple of (ciphertext with 16-byte tag, 12-byte nonce)

        Raises:
            KeyUnavailableError: If no master key is loaded
        """
        cipher = self._current_cipher()
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = cipher.encrypt(nonce, plaintext, None)
        return ciphertext, nonce

    def decrypt(self, ciphertext: bytes, nonce: bytes) -> bytes:
        """Decrypt and verify a payload.

        Args:
            ciphertext: Ciphertext with trailing GCM tag
            nonce: Nonce returned by ``encrypt``

        Returns:
            Decrypted plaintext bytes

        Raises:
            KeyUnavailableError: If no master key is loaded
            InvalidNonceError: If the nonce is not 12 bytes
            AuthenticationFailedError: If the tag does not verify
        """
        cipher = self._current_cipher()
        if len(nonce) != NONCE_SIZE:
            raise InvalidNonceError(len(nonce), NONCE_SIZE)
        if len(ciphertext) < TAG_SIZE:
            raise AuthenticationFailedError(
                f"Ciphertext too short: {len(ciphertext)} bytes (minimum {TAG_SIZE})"
            )
        try:
            return cipher.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise AuthenticationFailedError("Ciphertext integrity check failed") from e

    def encrypt_text(self, plaintext: bytes) -> tuple[str, str]:
        """Encrypt and return base64 strings for persistence.

        Returns:
            Tuple of (base64 ciphertext, base64 nonce)
        """
        ciphertext, nonce = self.encrypt(plaintext)
        return (
            base64.b64encode(ciphertext).decode("ascii"),
            base64.b64encode(nonce).decode("ascii"),
        )

    def decrypt_text(self, encrypted_data: str, iv: str) -> bytes:
        """Decrypt base64-encoded ciphertext and nonce.

        Raises:
            InvalidNonceError: If ``iv`` is not valid base64 of a 12-byte nonce
            AuthenticationFailedError: If the ciphertext is not valid base64 or
                fails verification
        """
        try:
            nonce = base64.b64decode(iv, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidNonceError(len(iv), NONCE_SIZE) from e
        try:
            ciphertext = base64.b64decode(encrypted_data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationFailedError("Stored ciphertext is not valid base64") from e
        return self.decrypt(ciphertext, nonce)


def generate_master_key() -> bytes:
    """Generate a new random 256-bit master key."""
    return secrets.token_bytes(KEY_LENGTH)
