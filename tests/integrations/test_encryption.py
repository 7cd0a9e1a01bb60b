"""Tests for the AES-GCM cipher vault."""

import base64
import threading

import pytest

from credbroker.errors import AuthenticationFailedError, InvalidNonceError, KeyUnavailableError
from credbroker.integrations.credentials.encryption import (
    DEFAULT_MASTER_KEY_NAME,
    KEY_LENGTH,
    NONCE_SIZE,
    CipherVault,
    generate_master_key,
)
from credbroker.integrations.credentials.secret_store import InMemorySecretStore


class FailingSecretStore:
    """Secret store whose writes always fail."""

    def get(self, name: str):
        return None

    def put(self, name: str, value: bytes) -> None:
        raise OSError("keychain locked")


class TestMasterKey:
    """Tests for loading and generating the master key."""

    def test_generate_master_key_is_256_bits(self) -> None:
        """Generated keys should be 32 random bytes."""
        key1 = generate_master_key()
        key2 = generate_master_key()
        assert len(key1) == KEY_LENGTH
        assert key1 != key2

    def test_load_key_generates_and_stores_when_absent(self) -> None:
        """First load should create a key and persist it."""
        secret_store = InMemorySecretStore()
        vault = CipherVault(secret_store)
        assert not vault.is_loaded

        vault.load_key()

        assert vault.is_loaded
        assert len(secret_store.get(DEFAULT_MASTER_KEY_NAME)) == KEY_LENGTH

    def test_load_key_reuses_existing_key(self) -> None:
        """A stored key should be used as-is across vault instances."""
        secret_store = InMemorySecretStore()
        first = CipherVault.open(secret_store)
        ciphertext, nonce = first.encrypt(b"payload")

        second = CipherVault.open(secret_store)

        assert second.decrypt(ciphertext, nonce) == b"payload"

    def test_load_key_runs_once(self) -> None:
        """Repeated loads should not replace the key in memory."""
        secret_store = InMemorySecretStore()
        vault = CipherVault.open(secret_store)
        ciphertext, nonce = vault.encrypt(b"payload")

        secret_store.put(DEFAULT_MASTER_KEY_NAME, generate_master_key())
        vault.load_key()

        assert vault.decrypt(ciphertext, nonce) == b"payload"

    def test_load_key_rejects_malformed_stored_key(self) -> None:
        """A stored key of the wrong length should raise KeyUnavailableError."""
        secret_store = InMemorySecretStore({DEFAULT_MASTER_KEY_NAME: b"short"})

        with pytest.raises(KeyUnavailableError):
            CipherVault.open(secret_store)

    def test_load_key_fails_when_key_cannot_be_stored(self) -> None:
        """Failure to persist a new key should raise KeyUnavailableError."""
        with pytest.raises(KeyUnavailableError, match="keychain locked"):
            CipherVault.open(FailingSecretStore())

    def test_encrypt_without_key_raises(self) -> None:
        """Using a vault before loading the key should raise KeyUnavailableError."""
        vault = CipherVault(InMemorySecretStore())

        with pytest.raises(KeyUnavailableError):
            vault.encrypt(b"payload")

    def test_custom_key_name(self) -> None:
        """The key should be stored under the configured name."""
        secret_store = InMemorySecretStore()
        CipherVault.open(secret_store, key_name="app.key")

        assert secret_store.get("app.key") is not None
        assert secret_store.get(DEFAULT_MASTER_KEY_NAME) is None


class TestCipherVault:
    """Tests for encrypt and decrypt."""

    @pytest.mark.parametrize(
        "plaintext",
        [b"", b"my_secret_token", "token_with_emoji_🔒_and_中文".encode(), bytes(range(256)) * 8],
    )
    def test_decrypt_reproduces_plaintext(self, vault: CipherVault, plaintext: bytes) -> None:
        """decrypt(encrypt(P)) should return P exactly."""
        ciphertext, nonce = vault.encrypt(plaintext)

        assert vault.decrypt(ciphertext, nonce) == plaintext

    def test_encrypt_uses_fresh_nonce(self, vault: CipherVault) -> None:
        """Two encryptions of the same plaintext should differ in nonce and ciphertext."""
        ciphertext1, nonce1 = vault.encrypt(b"same")
        ciphertext2, nonce2 = vault.encrypt(b"same")

        assert len(nonce1) == NONCE_SIZE
        assert nonce1 != nonce2
        assert ciphertext1 != ciphertext2

    def test_ciphertext_carries_tag(self, vault: CipherVault) -> None:
        """Ciphertext should be plaintext length plus the 16-byte tag."""
        ciphertext, _ = vault.encrypt(b"12345")
        assert len(ciphertext) == 5 + 16

    def test_flipped_ciphertext_byte_fails(self, vault: CipherVault) -> None:
        """Tampered ciphertext should raise AuthenticationFailedError."""
        ciphertext, nonce = vault.encrypt(b"secret")
        tampered = bytes([ciphertext[0] ^ 0x01]) + ciphertext[1:]

        with pytest.raises(AuthenticationFailedError):
            vault.decrypt(tampered, nonce)

    def test_flipped_nonce_byte_fails(self, vault: CipherVault) -> None:
        """A modified nonce should raise AuthenticationFailedError."""
        ciphertext, nonce = vault.encrypt(b"secret")
        tampered = bytes([nonce[0] ^ 0x01]) + nonce[1:]

        with pytest.raises(AuthenticationFailedError):
            vault.decrypt(ciphertext, tampered)

    def test_wrong_nonce_length_fails(self, vault: CipherVault) -> None:
        """A nonce that is not 12 bytes should raise InvalidNonceError."""
        ciphertext, nonce = vault.encrypt(b"secret")

        with pytest.raises(InvalidNonceError):
            vault.decrypt(ciphertext, nonce[:-1])

    def test_truncated_ciphertext_fails(self, vault: CipherVault) -> None:
        """Ciphertext shorter than the tag should raise AuthenticationFailedError."""
        _, nonce = vault.encrypt(b"secret")

        with pytest.raises(AuthenticationFailedError):
            vault.decrypt(b"short", nonce)

    def test_decrypt_with_other_key_fails(self) -> None:
        """Ciphertext from another key should raise AuthenticationFailedError."""
        vault1 = CipherVault.open(InMemorySecretStore())
        vault2 = CipherVault.open(InMemorySecretStore())
        ciphertext, nonce = vault1.encrypt(b"secret")

        with pytest.raises(AuthenticationFailedError):
            vault2.decrypt(ciphertext, nonce)

    def test_text_helpers_use_base64(self, vault: CipherVault) -> None:
        """encrypt_text should return base64 strings accepted by decrypt_text."""
        encrypted_data, iv = vault.encrypt_text(b"payload")

        assert len(base64.b64decode(iv)) == NONCE_SIZE
        assert vault.decrypt_text(encrypted_data, iv) == b"payload"

    def test_decrypt_text_rejects_invalid_base64(self, vault: CipherVault) -> None:
        """Malformed stored values should raise vault errors."""
        encrypted_data, iv = vault.encrypt_text(b"payload")

        with pytest.raises(InvalidNonceError):
            vault.decrypt_text(encrypted_data, "not base64!")
        with pytest.raises(AuthenticationFailedError):
            vault.decrypt_text("not base64!", iv)


class TestKeyRegeneration:
    """Tests for master key regeneration."""

    def test_regenerate_key_invalidates_old_ciphertext(self) -> None:
        """Records encrypted under the old key should no longer decrypt."""
        secret_store = InMemorySecretStore()
        vault = CipherVault.open(secret_store)
        old_key = secret_store.get(DEFAULT_MASTER_KEY_NAME)
        ciphertext, nonce = vault.encrypt(b"secret")

        vault.regenerate_key()

        assert secret_store.get(DEFAULT_MASTER_KEY_NAME) != old_key
        with pytest.raises(AuthenticationFailedError):
            vault.decrypt(ciphertext, nonce)
        new_ciphertext, new_nonce = vault.encrypt(b"secret")
        assert vault.decrypt(new_ciphertext, new_nonce) == b"secret"

    def test_concurrent_use_during_regeneration(self) -> None:
        """Each call should use one whole key, so round trips never fail."""
        vault = CipherVault.open(InMemorySecretStore())
        errors: list[Exception] = []

        def worker() -> None:
            for _ in range(200):
                ciphertext, nonce = vault.encrypt(b"payload")
                try:
                    vault.decrypt(ciphertext, nonce)
                except AuthenticationFailedError:
                    # The key may legitimately change between the two calls
                    continue
                except Exception as e:  # pragma: no cover
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for _ in range(20):
            vault.regenerate_key()
        for thread in threads:
            thread.join()

        assert errors == []
