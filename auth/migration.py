"""
Migration of legacy token files to the versioned encrypted format.

Legacy files hold "iv:authTag:ciphertext" in hex, encrypted with AES-256-GCM
directly under the base64-decoded 32-byte encryption secret (no KDF, no key
version). Migration backs the file up, decrypts it, and re-saves it through
the CredentialStore so it gets a derived key, a key version and an audit
entry.
"""

import base64
import binascii
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from auth.audit_log import AuditLogProtocol
from auth.backup_store import BackupStore
from auth.codec import decrypt_bytes, is_legacy_format
from auth.credential_store import CredentialStore
from auth.credential_types import AuditEvent, TokenRecord, utcnow
from core.errors import BackupError, DecryptionError, MigrationError

logger = logging.getLogger(__name__)

LEGACY_FORMAT_VERSION = 1
LEGACY_KEY_SIZE = 32


@dataclass(frozen=True)
class MigrationResult:
    backup_path: str
    key_version: int
    migrated_at: datetime


def decode_legacy_key(secret: str) -> bytes:
    """
    Decode the base64 secret that legacy files were encrypted under.

    Raises:
        MigrationError: If the secret is not base64 for exactly 32 bytes.
    """
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MigrationError("Legacy encryption key must be base64 encoded") from e
    if len(key) != LEGACY_KEY_SIZE:
        raise MigrationError(f"Legacy encryption key must decode to {LEGACY_KEY_SIZE} bytes, got {len(key)}")
    return key


def decrypt_legacy(raw: bytes | str, key: bytes) -> TokenRecord:
    """
    Decrypt a legacy token file.

    Raises:
        DecryptionError: If the content is malformed or the key is wrong.
    """
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        iv, auth_tag, ciphertext = (bytes.fromhex(part) for part in text.strip().split(":"))
    except ValueError as e:
        raise DecryptionError("Legacy token file is not in iv:authTag:ciphertext hex form") from e

    plaintext = decrypt_bytes(ciphertext, auth_tag, key, iv, None)
    try:
        return TokenRecord.from_dict(json.loads(plaintext.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
        raise DecryptionError(f"Legacy token data is malformed: {e}") from e


class TokenMigrator:
    """Converts a legacy token file in place."""

    def __init__(
        self,
        store: CredentialStore,
        backups: BackupStore,
        audit_log: AuditLogProtocol,
        legacy_secret_provider: Callable[[], str],
    ):
        self.store = store
        self.backups = backups
        self.audit_log = audit_log
        self.legacy_secret_provider = legacy_secret_provider

    def needs_migration(self) -> bool:
        raw = self.store.read_raw()
        return raw is not None and is_legacy_format(raw)

    def migrate(self) -> MigrationResult:
        """
        Migrate the legacy token file.

        Raises:
            MigrationError: If there is nothing to migrate or any step fails.
                The original file is restored before the error is raised.
        """
        try:
            result = self._migrate_locked()
        except MigrationError as e:
            self.audit_log.record(AuditEvent.MIGRATION_FAILED, {"error": str(e)})
            raise

        logger.info(f"Migrated legacy tokens to key version {result.key_version} (backup: {result.backup_path})")
        return result

    def _migrate_locked(self) -> MigrationResult:
        with self.store.lock:
            raw = self.store.read_raw()
            if raw is None:
                raise MigrationError(f"No token file found at {self.store.token_path}")
            if not is_legacy_format(raw):
                raise MigrationError("Token file is already in the versioned format")

            key = decode_legacy_key(self.legacy_secret_provider())
            try:
                record = decrypt_legacy(raw, key)
            except DecryptionError as e:
                raise MigrationError(f"Cannot decrypt legacy token file: {e}") from e

            try:
                backup = self.backups.snapshot(self.store.token_path)
            except BackupError as e:
                raise MigrationError(f"Cannot back up legacy token file: {e}") from e

            try:
                key_version, _ = self.store.new_key()
                self.store.save(
                    record,
                    event=AuditEvent.TOKENS_MIGRATED,
                    metadata={"fromFormat": LEGACY_FORMAT_VERSION, "backup": backup.path},
                )
                if self.store.load() != record:
                    raise MigrationError("migrated tokens do not match the legacy tokens")
            except Exception as e:
                logger.error(f"Token migration failed, restoring {backup.path}: {e}")
                self.store.write_raw(raw)
                if isinstance(e, MigrationError):
                    raise
                raise MigrationError(f"Token migration failed and was rolled back: {e}") from e

        return MigrationResult(backup_path=backup.path, key_version=key_version.version, migrated_at=utcnow())
