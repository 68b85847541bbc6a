"""
Authenticated encryption of token records.

Implements AES-256-GCM encryption for storing OAuth tokens at rest.

SECURITY:
- Each encryption uses a unique random 96-bit IV
- The key version is bound as associated data, so relabelling a blob fails
- Decryption fails closed: any tag mismatch or malformed input raises
  DecryptionError and never returns partial plaintext
"""

import json
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from auth.credential_types import FORMAT_VERSION, EncryptedBlob, KeyVersion, TokenRecord
from core.errors import DecryptionError

logger = logging.getLogger(__name__)

IV_SIZE = 12  # 96 bits, recommended for AES-GCM
TAG_SIZE = 16  # 128 bits, standard for AES-GCM
KEY_SIZE = 32  # 256 bits for AES-256


def _associated_data(key_version: int) -> bytes:
    return f"gws-mcp-token:v{key_version}".encode("ascii")


def encrypt_bytes(plaintext: bytes, key: bytes, iv: bytes, associated_data: bytes | None) -> tuple[bytes, bytes]:
    """Encrypt with AES-GCM, returning (ciphertext, tag)."""
    sealed = AESGCM(key).encrypt(iv, plaintext, associated_data)
    return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def decrypt_bytes(
    ciphertext: bytes, auth_tag: bytes, key: bytes, iv: bytes, associated_data: bytes | None
) -> bytes:
    """
    Decrypt AES-GCM ciphertext with a detached tag.

    Raises:
        DecryptionError: On a wrong key, tampered data or malformed parameters.
    """
    if len(key) != KEY_SIZE:
        raise DecryptionError(f"Decryption key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(auth_tag) != TAG_SIZE:
        raise DecryptionError("Authentication tag has an invalid length")
    try:
        return AESGCM(key).decrypt(iv, ciphertext + auth_tag, associated_data)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed: token data is corrupt or was encrypted with another key") from e
    except ValueError as e:
        raise DecryptionError(f"Invalid encryption parameters: {e}") from e


class CredentialCodec:
    """Encrypts and decrypts TokenRecords; stateless given a key."""

    def encrypt(self, record: TokenRecord, key: bytes, key_version: KeyVersion) -> EncryptedBlob:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")

        iv = os.urandom(IV_SIZE)
        plaintext = json.dumps(record.to_dict(), sort_keys=True).encode("utf-8")
        ciphertext, auth_tag = encrypt_bytes(plaintext, key, iv, _associated_data(key_version.version))

        return EncryptedBlob(
            format_version=FORMAT_VERSION,
            key_version=key_version.version,
            iv=iv,
            auth_tag=auth_tag,
            ciphertext=ciphertext,
            salt=key_version.salt,
            iterations=key_version.iterations,
            created_at=key_version.created_at,
        )

    def decrypt(self, blob: EncryptedBlob, key: bytes) -> TokenRecord:
        plaintext = decrypt_bytes(blob.ciphertext, blob.auth_tag, key, blob.iv, _associated_data(blob.key_version))
        try:
            return TokenRecord.from_dict(json.loads(plaintext.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
            raise DecryptionError(f"Decrypted token data is malformed: {e}") from e


def blob_to_json(blob: EncryptedBlob) -> bytes:
    return (json.dumps(blob.to_dict(), indent=2) + "\n").encode("utf-8")


def blob_from_json(raw: bytes | str) -> EncryptedBlob:
    """
    Parse an encrypted token file.

    Raises:
        DecryptionError: If the content is not a well-formed blob.
    """
    if is_legacy_format(raw):
        raise DecryptionError("Legacy token format detected. Run 'gws-credentials migrate-tokens' to upgrade it.")
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Token file is not valid JSON: {e}") from e
    return EncryptedBlob.from_dict(data)


def is_legacy_format(raw: bytes | str) -> bool:
    """Check for the unversioned hex "iv:authTag:ciphertext" token file."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    parts = text.strip().split(":")
    if len(parts) != 3 or not all(parts):
        return False
    try:
        for part in parts:
            bytes.fromhex(part)
    except ValueError:
        return False
    return True
