"""Payload encryption for government submission.

The production implementation is AES-256-GCM with a key loaded from the
environment. The engine only depends on the :class:`Encryptor` interface so
tests can substitute a fake.
"""

import base64
import binascii
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medsubmit.config.schema import EncryptionConfig
from medsubmit.utils.exceptions import EncryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
NONCE_SIZE = 12
KEY_SIZE = 32


@dataclass(frozen=True)
class EncryptedPayload:
    """Encrypted document plus the metadata the government needs to decrypt it.

    Attributes:
        ciphertext: base64 of ``nonce || ciphertext || tag``
        algorithm: Cipher name
        key_version: Version of the key used
        checksum: SHA-256 of the canonical plaintext
    """

    ciphertext: str
    algorithm: str
    key_version: str
    checksum: str

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "keyVersion": self.key_version,
            "checksum": self.checksum,
        }


class Encryptor(ABC):
    """Encrypts a canonical payload."""

    @abstractmethod
    def encrypt(self, plaintext: bytes, checksum: str, associated_data: Optional[bytes] = None) -> EncryptedPayload:
        """Encrypt ``plaintext``.

        Raises:
            EncryptionError: If encryption fails
        """


class DeferredEncryptor(Encryptor):
    """Builds the real encryptor on first use.

    Lets read-only commands run without the encryption key in the environment.
    """

    def __init__(self, factory: Callable[[], Encryptor]) -> None:
        self._factory = factory
        self._encryptor: Optional[Encryptor] = None
        self._lock = threading.Lock()

    def encrypt(self, plaintext: bytes, checksum: str, associated_data: Optional[bytes] = None) -> EncryptedPayload:
        with self._lock:
            if self._encryptor is None:
                self._encryptor = self._factory()
        return self._encryptor.encrypt(plaintext, checksum, associated_data)


class AesGcmEncryptor(Encryptor):
    """AES-256-GCM encryptor.

    Args:
        key: 32 byte key
        key_version: Version label sent with every payload
    """

    def __init__(self, key: bytes, key_version: str = "v1") -> None:
        if len(key) != KEY_SIZE:
            raise EncryptionError(f"AES-256 key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)
        self.key_version = key_version

    @classmethod
    def from_config(cls, config: EncryptionConfig) -> "AesGcmEncryptor":
        """Build an encryptor from the base64 key in ``config.key_env_var``.

        Raises:
            EncryptionError: If the variable is unset or not a valid key
        """
        encoded = os.getenv(config.key_env_var)
        if not encoded:
            raise EncryptionError(
                f"Encryption key not set. Fix: export {config.key_env_var}=<base64 32-byte key>"
            )
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"{config.key_env_var} is not valid base64") from e
        return cls(key, key_version=config.key_version)

    @staticmethod
    def generate_key() -> str:
        """Return a new random key, base64 encoded."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: bytes, checksum: str, associated_data: Optional[bytes] = None) -> EncryptedPayload:
        nonce = os.urandom(NONCE_SIZE)
        try:
            sealed = self._aead.encrypt(nonce, plaintext, associated_data)
        except (OverflowError, ValueError, TypeError) as e:
            raise EncryptionError(f"Payload encryption failed: {e}") from e

        return EncryptedPayload(
            ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
            algorithm=ALGORITHM,
            key_version=self.key_version,
            checksum=checksum,
        )

    def decrypt(self, ciphertext: str, associated_data: Optional[bytes] = None) -> bytes:
        """Reverse :meth:`encrypt`; used by the mock endpoint and tests.

        Raises:
            EncryptionError: If the payload was tampered with or the key is wrong
        """
        try:
            raw = base64.b64decode(ciphertext, validate=True)
            return self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], associated_data)
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise EncryptionError("Payload could not be decrypted") from e
