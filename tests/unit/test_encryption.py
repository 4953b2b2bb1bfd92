"""Unit tests for AES-256-GCM payload encryption."""

import base64

import pytest

from medsubmit.config.schema import EncryptionConfig
from medsubmit.submission.encryption import (
    ALGORITHM,
    NONCE_SIZE,
    AesGcmEncryptor,
    DeferredEncryptor,
)
from medsubmit.utils.exceptions import EncryptionError


@pytest.fixture
def key() -> bytes:
    return bytes(range(32))


class TestAesGcmEncryptor:
    """Tests for AesGcmEncryptor."""

    def test_encrypt_decrypt_round_trip(self, key):
        """Test the ciphertext decrypts to the original payload."""
        # Arrange
        encryptor = AesGcmEncryptor(key, key_version="v2")
        plaintext = b'{"reports":[]}'

        # Act
        payload = encryptor.encrypt(plaintext, checksum="abc")

        # Assert
        assert encryptor.decrypt(payload.ciphertext) == plaintext
        assert payload.algorithm == ALGORITHM
        assert payload.key_version == "v2"
        assert payload.checksum == "abc"

    def test_ciphertext_does_not_contain_plaintext(self, key):
        payload = AesGcmEncryptor(key).encrypt(b"Hypertension", checksum="x")

        assert b"Hypertension" not in base64.b64decode(payload.ciphertext)

    def test_fresh_nonce_per_call(self, key):
        """Test encrypting twice yields different ciphertexts."""
        encryptor = AesGcmEncryptor(key)

        first = encryptor.encrypt(b"same", checksum="x")
        second = encryptor.encrypt(b"same", checksum="x")

        assert first.ciphertext != second.ciphertext
        assert base64.b64decode(first.ciphertext)[:NONCE_SIZE] != base64.b64decode(second.ciphertext)[:NONCE_SIZE]

    def test_tampered_ciphertext_rejected(self, key):
        # Arrange
        encryptor = AesGcmEncryptor(key)
        raw = bytearray(base64.b64decode(encryptor.encrypt(b"payload", checksum="x").ciphertext))
        raw[-1] ^= 0x01

        # Act & Assert
        with pytest.raises(EncryptionError, match="could not be decrypted"):
            encryptor.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))

    def test_wrong_key_rejected(self, key):
        payload = AesGcmEncryptor(key).encrypt(b"payload", checksum="x")

        with pytest.raises(EncryptionError):
            AesGcmEncryptor(bytes(32)).decrypt(payload.ciphertext)

    def test_short_key_rejected(self):
        with pytest.raises(EncryptionError, match="32 bytes"):
            AesGcmEncryptor(b"too-short")

    def test_metadata(self, key):
        payload = AesGcmEncryptor(key, key_version="v1").encrypt(b"x", checksum="sum")

        assert payload.metadata == {"algorithm": ALGORITHM, "keyVersion": "v1", "checksum": "sum"}

    def test_generate_key_is_valid(self):
        key = base64.b64decode(AesGcmEncryptor.generate_key())

        assert len(key) == 32


class TestFromConfig:
    """Tests for loading the key from the environment."""

    def test_loads_key_from_env(self, monkeypatch, key):
        # Arrange
        monkeypatch.setenv("TEST_ENCRYPTION_KEY", base64.b64encode(key).decode("ascii"))
        config = EncryptionConfig(key_env_var="TEST_ENCRYPTION_KEY", key_version="v3")

        # Act
        encryptor = AesGcmEncryptor.from_config(config)

        # Assert
        assert encryptor.key_version == "v3"
        assert encryptor.decrypt(encryptor.encrypt(b"ok", "x").ciphertext) == b"ok"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("TEST_ENCRYPTION_KEY", raising=False)

        with pytest.raises(EncryptionError, match="TEST_ENCRYPTION_KEY"):
            AesGcmEncryptor.from_config(EncryptionConfig(key_env_var="TEST_ENCRYPTION_KEY"))

    def test_invalid_base64(self, monkeypatch):
        monkeypatch.setenv("TEST_ENCRYPTION_KEY", "not base64!!")

        with pytest.raises(EncryptionError, match="not valid base64"):
            AesGcmEncryptor.from_config(EncryptionConfig(key_env_var="TEST_ENCRYPTION_KEY"))


class TestDeferredEncryptor:
    """Tests for lazy encryptor construction."""

    def test_factory_not_called_until_encrypt(self, key):
        # Arrange
        calls = []

        def factory():
            calls.append(1)
            return AesGcmEncryptor(key)

        deferred = DeferredEncryptor(factory)
        assert calls == []

        # Act
        deferred.encrypt(b"a", "x")
        deferred.encrypt(b"b", "y")

        # Assert
        assert calls == [1]

    def test_factory_error_propagates(self):
        def factory():
            raise EncryptionError("Encryption key not set")

        with pytest.raises(EncryptionError, match="not set"):
            DeferredEncryptor(factory).encrypt(b"a", "x")
