import base64
import binascii
import logging
import os
from typing import Any, Dict, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import EncryptionMode
from errors import ConfigurationError, DecryptionFailure

logger = logging.getLogger(__name__)

ENCRYPTION_PREFIX = "enc:"
SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
KDF_ITERATIONS = 100_000


def is_encrypted(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTION_PREFIX)


class CredentialVault:
    def __init__(self, master_key: Optional[str], mode: EncryptionMode = EncryptionMode.PERMISSIVE):
        self.master_key = master_key or None
        self.mode = EncryptionMode(mode)

    @property
    def configured(self) -> bool:
        return self.master_key is not None

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(self.master_key.encode("utf-8"))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential; blank and already encrypted values come back unchanged."""
        if not plaintext or plaintext.strip() == "":
            return plaintext

        if is_encrypted(plaintext):
            return plaintext

        if not self.configured:
            if self.mode == EncryptionMode.STRICT:
                raise ConfigurationError("Credential encryption key is not configured")
            logger.warning("CREDENTIALS_ENCRYPTION_KEY not set, storing credential unencrypted")
            return plaintext

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(iv, plaintext.encode("utf-8"), None)

        return ENCRYPTION_PREFIX + base64.b64encode(salt + iv + ciphertext).decode("ascii")

    def decrypt_or_raise(self, value: str) -> str:
        if not value or value.strip() == "":
            return value

        # Legacy plaintext
        if not is_encrypted(value):
            return value

        if not self.configured:
            raise DecryptionFailure("CREDENTIALS_ENCRYPTION_KEY not set, cannot decrypt")

        try:
            blob = base64.b64decode(value[len(ENCRYPTION_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailure(f"Malformed encrypted credential: {e}") from e

        if len(blob) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
            raise DecryptionFailure("Encrypted credential is truncated")

        salt = blob[:SALT_LENGTH]
        iv = blob[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        ciphertext = blob[SALT_LENGTH + IV_LENGTH:]

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionFailure("Wrong encryption key or tampered credential") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailure("Decrypted credential is not valid UTF-8") from e

    def decrypt(self, value: str) -> str:
        """Decrypt a stored credential, returning "" when it cannot be decrypted."""
        try:
            return self.decrypt_or_raise(value)
        except DecryptionFailure as e:
            logger.error(f"Credential decryption failed: {e}")
            return ""

    def decrypt_fields(self, config: Optional[Dict[str, Any]], fields: Iterable[str]) -> Dict[str, Any]:
        """Decrypt the named string fields of a config mapping, leaving the rest as-is."""
        if not config:
            return {}

        result = dict(config)
        for field in fields:
            value = result.get(field)
            if value and isinstance(value, str):
                result[field] = self.decrypt(value)
        return result
