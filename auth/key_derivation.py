"""
Key derivation for token encryption.

Turns an operator-supplied secret into a fixed-length AES-256 key with
PBKDF2-HMAC-SHA256. Derivation is deterministic: the same secret, salt and
iteration count always give the same key, which is what keeps old backups
decryptable from their recorded parameters.
"""

import logging
import os
from datetime import datetime

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from auth.config import MIN_KDF_ITERATIONS
from auth.credential_types import KeyVersion, utcnow
from core.errors import ServiceConfigurationError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits for AES-256
SALT_LENGTH = 32
MIN_SECRET_LENGTH = 16


class KeyDeriver:
    """Stateless PBKDF2 key deriver with an enforced iteration floor."""

    def __init__(self, min_iterations: int = MIN_KDF_ITERATIONS):
        self.min_iterations = min_iterations

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_LENGTH)

    def derive(self, secret: str | bytes, salt: bytes, iterations: int) -> bytes:
        """
        Derive a 32-byte key from a secret.

        Raises:
            ServiceConfigurationError: If the iteration count is below the floor,
                the salt is empty or the secret is too short.
        """
        if iterations < self.min_iterations:
            raise ServiceConfigurationError(f"KDF iterations must be at least {self.min_iterations}, got {iterations}")
        if not salt:
            raise ServiceConfigurationError("KDF salt must not be empty")

        secret_bytes = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        if len(secret_bytes) < MIN_SECRET_LENGTH:
            raise ServiceConfigurationError(f"Encryption secret must be at least {MIN_SECRET_LENGTH} characters long")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(secret_bytes)

    def new_key_version(
        self,
        secret: str | bytes,
        version: int,
        iterations: int,
        created_at: datetime | None = None,
    ) -> tuple[KeyVersion, bytes]:
        """Derive a key for a brand new version with a fresh salt."""
        salt = self.generate_salt()
        key = self.derive(secret, salt, iterations)
        key_version = KeyVersion(
            version=version,
            created_at=created_at or utcnow(),
            iterations=iterations,
            salt=salt,
        )
        logger.debug(f"Derived key version {version} ({iterations} iterations)")
        return key_version, key
