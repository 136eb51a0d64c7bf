"""Encryption service for embedding vectors at rest.

This service provides encryption/decryption of embedding vectors before they
cross the storage boundary. The plaintext vector is kept alongside for
similarity search only; the ciphertext is what backups and exports carry.

Security Impact:
    - Uses Fernet (AES-128-CBC + HMAC-SHA256, authenticated symmetric encryption)
    - Fernet generates a fresh random IV inside every encrypt call, so nonce
      reuse under one key is impossible by construction
    - Decryption with the wrong key fails authentication and raises
      EncryptionError; corrupted plaintext is never returned
    - Keys derived from environment variables, never logged

Architecture:
    - Infrastructure layer component
    - Used by storage adapters when persisting embeddings
    - Follows Hexagonal Architecture: isolated from domain core
"""

import base64
import json
import logging
import math
import os
from typing import Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from clinical_rag.domain.ports import EncryptionError

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100000
DEFAULT_SALT = 'clinical-rag-salt'


class EncryptionService:
    """Service for encrypting/decrypting embedding vectors.

    Keys are taken from the constructor or derived from the environment.

    Security Impact:
        - Vectors are encrypted before storage
        - Keys should be stored securely (env vars, key management service)
        - Supports key rotation via key_id tracking
    """

    def __init__(self, key: Optional[bytes] = None, key_id: Optional[str] = None):
        """Initialize encryption service.

        Parameters:
            key: Fernet key (urlsafe base64 of 32 bytes); derived from env if None
            key_id: Identifier for the encryption key (for rotation support)

        Raises:
            EncryptionError: If the key is not a valid Fernet key
        """
        if key is None:
            key = self._derive_key_from_env()

        try:
            self.cipher = Fernet(key)
        except (ValueError, TypeError) as e:
            logger.error("Invalid encryption key format")
            raise EncryptionError(
                "Invalid encryption key format. Key must be urlsafe base64-encoded 32-byte key."
            ) from e

        self.key_id = key_id or os.getenv('CR_ENCRYPTION_KEY_ID', 'default')
        logger.debug(f"EncryptionService initialized with key_id: {self.key_id}")

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    @staticmethod
    def _derive_key_from_env() -> bytes:
        """Derive encryption key from environment variables.

        Looks for CR_ENCRYPTION_KEY (a Fernet key). If not found, derives one from
        CR_ENCRYPTION_KEY_PASSWORD and CR_ENCRYPTION_KEY_SALT using PBKDF2.

        Returns:
            bytes: Fernet key
        """
        key_str = os.getenv('CR_ENCRYPTION_KEY')
        if key_str:
            return key_str.encode('utf-8')

        password = os.getenv('CR_ENCRYPTION_KEY_PASSWORD')
        if password:
            salt = os.getenv('CR_ENCRYPTION_KEY_SALT', DEFAULT_SALT).encode('utf-8')
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=salt,
                iterations=KDF_ITERATIONS,
            )
            return base64.urlsafe_b64encode(kdf.derive(password.encode('utf-8')))

        logger.warning(
            "No CR_ENCRYPTION_KEY or CR_ENCRYPTION_KEY_PASSWORD found. "
            "Using generated key (NOT SECURE for production!). "
            "Data encrypted in this process cannot be decrypted after restart."
        )
        return Fernet.generate_key()

    def encrypt_vector(self, vector: Sequence[float]) -> bytes:
        """Encrypt an embedding vector.

        Floats are JSON-encoded with repr precision, so decryption returns the
        exact same values.

        Raises:
            EncryptionError: If the vector is empty, non-finite, or encryption fails
        """
        values = [float(x) for x in vector]
        if not values:
            raise EncryptionError("Cannot encrypt an empty vector")
        if any(not math.isfinite(x) for x in values):
            raise EncryptionError("Cannot encrypt a vector with non-finite values")
        try:
            payload = json.dumps(values, separators=(',', ':'))
            return self.cipher.encrypt(payload.encode('utf-8'))
        except Exception as e:
            logger.error(f"Failed to encrypt vector: {type(e).__name__}")
            raise EncryptionError(f"Failed to encrypt vector: {e}") from e

    def decrypt_vector(self, encrypted: bytes) -> list[float]:
        """Decrypt an embedding vector.

        Raises:
            EncryptionError: On wrong key, tampering, or malformed payload
        """
        try:
            payload = self.cipher.decrypt(bytes(encrypted))
        except InvalidToken as e:
            logger.error("Failed to decrypt vector: invalid token or wrong key")
            raise EncryptionError("Failed to decrypt vector: invalid token or wrong key") from e
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Failed to decrypt vector: {e}") from e

        try:
            values = json.loads(payload.decode('utf-8'))
        except ValueError as e:
            raise EncryptionError("Decrypted payload is not a vector") from e
        if not isinstance(values, list):
            raise EncryptionError("Decrypted payload is not a vector")
        return [float(x) for x in values]

    def get_key_id(self) -> str:
        """Get the current encryption key ID."""
        return self.key_id
