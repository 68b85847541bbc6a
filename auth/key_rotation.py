"""
Encryption key rotation with backup and rollback.

Rotation runs under the credential store's lock and goes through:
snapshot -> derive new key -> re-encrypt -> write -> verify -> commit.
Any failure after the snapshot restores the pre-rotation file byte for byte
before the error is raised, so the live file is never left half-migrated.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from auth.audit_log import AuditLogProtocol
from auth.backup_store import BackupStore
from auth.codec import blob_from_json, blob_to_json
from auth.credential_store import CredentialStore
from auth.credential_types import AuditEvent, Backup, KeyVersion, TokenRecord, utcnow
from auth.key_derivation import KeyDeriver
from core.errors import BackupError, DecryptionError, KeyRotationError
from core.utils import atomic_write_bytes, check_directory_writable

logger = logging.getLogger(__name__)

# Free space required before a rotation, relative to the live file size.
DISK_SPACE_FACTOR = 4
DISK_SPACE_MARGIN_BYTES = 64 * 1024


@dataclass(frozen=True)
class RotationResult:
    previous_version: int
    new_version: int
    backup_path: str
    rotated_at: datetime
    key_version: KeyVersion
    pruned: list[str] = field(default_factory=list)


class KeyRotator:
    """Re-encrypts the stored token under a new key version."""

    def __init__(
        self,
        store: CredentialStore,
        backups: BackupStore,
        audit_log: AuditLogProtocol,
        retention: int,
        iterations: int,
        deriver: KeyDeriver | None = None,
    ):
        self.store = store
        self.backups = backups
        self.audit_log = audit_log
        self.retention = retention
        self.iterations = iterations
        self.deriver = deriver or store.deriver

    def _fail(self, stage: str, message: str, cause: Exception | None = None) -> KeyRotationError:
        self.audit_log.record(AuditEvent.ROTATION_FAILED, {"stage": stage, "error": message, "rolledBack": False})
        logger.error(f"Key rotation failed at {stage}: {message}")
        error = KeyRotationError(f"Key rotation failed: {message}")
        if cause is not None:
            error.__cause__ = cause
        return error

    def rotate(self, new_secret: str, force: bool = False) -> RotationResult:
        """
        Rotate the encryption key.

        Args:
            new_secret: Operator-supplied secret for the next key version.
            force: Wait for an in-flight refresh instead of failing fast and skip
                the disk-space and writability pre-checks. Verification and
                rollback still run.

        Raises:
            KeyRotationError: On any failure; the live file is unchanged.
        """
        if not self.store.lock.acquire(blocking=force):
            raise self._fail("lock", "a token refresh or another rotation is in progress; retry later or use --force")

        try:
            return self._rotate_locked(new_secret, force)
        finally:
            self.store.lock.release()

    def _pre_checks(self, file_size: int) -> None:
        try:
            check_directory_writable(self.backups.backup_dir)
        except PermissionError as e:
            raise self._fail("pre-check", str(e), e) from e

        required = file_size * DISK_SPACE_FACTOR + DISK_SPACE_MARGIN_BYTES
        if not self.backups.has_free_space(required):
            raise self._fail("pre-check", f"less than {required} bytes free in {self.backups.backup_dir}")

    def _rotate_locked(self, new_secret: str, force: bool) -> RotationResult:
        original = self.store.read_raw()
        if original is None:
            raise self._fail("load", "no stored tokens to rotate")

        try:
            old_blob = blob_from_json(original)
        except DecryptionError as e:
            raise self._fail("load", str(e), e) from e

        if not force:
            self._pre_checks(len(original))
        else:
            logger.warning("Forced key rotation: skipping pre-checks")

        try:
            backup = self.backups.snapshot(self.store.token_path)
        except BackupError as e:
            raise self._fail("backup", str(e), e) from e

        new_version = old_blob.key_version + 1
        logger.info(f"Rotating key version {old_blob.key_version} -> {new_version}")

        stage = "decrypt"
        try:
            record = self.store.decrypt_blob(old_blob)
            stage = "derive"
            key_version, key = self.deriver.new_key_version(new_secret, new_version, self.iterations)
            stage = "re-encrypt"
            new_blob = self.store.codec.encrypt(record, key, key_version)
            stage = "write"
            atomic_write_bytes(self.store.token_path, blob_to_json(new_blob))
            stage = "verify"
            self._verify(record, key, new_version)
        except Exception as e:
            raise self._roll_back(stage, original, backup, e) from e

        self.store.adopt_key(key_version, key)
        pruned = self.backups.prune(self.retention)
        result = RotationResult(
            previous_version=old_blob.key_version,
            new_version=new_version,
            backup_path=backup.path,
            rotated_at=utcnow(),
            key_version=key_version,
            pruned=pruned,
        )
        self.audit_log.record(
            AuditEvent.KEY_ROTATED,
            {
                "previousVersion": result.previous_version,
                "newVersion": result.new_version,
                "iterations": key_version.iterations,
                "backup": backup.path,
                "prunedBackups": len(pruned),
                "forced": force,
            },
        )
        logger.info(f"Key rotation complete: now on key version {new_version}")
        return result

    def _verify(self, expected: TokenRecord, key: bytes, new_version: int) -> None:
        """Re-read the written file and check it decrypts to the original record."""
        blob = self.store.read_blob()
        if blob is None:
            raise KeyRotationError("token file disappeared during rotation")
        if blob.key_version != new_version:
            raise KeyRotationError(f"expected key version {new_version} on disk, found {blob.key_version}")
        if self.store.codec.decrypt(blob, key) != expected:
            raise KeyRotationError("re-encrypted tokens do not match the originals")

    def _roll_back(self, stage: str, original: bytes, backup: Backup, cause: Exception) -> KeyRotationError:
        """Restore the pre-rotation file from the snapshot and return the error to raise."""
        logger.error(f"Key rotation failed at {stage}, rolling back from {backup.path}: {cause}")
        try:
            content = self.backups.read(backup)
        except BackupError as e:
            logger.warning(f"Falling back to in-memory copy of the token file: {e}")
            content = original

        rolled_back = True
        try:
            self.store.write_raw(content)
        except OSError as e:
            rolled_back = False
            logger.critical(
                f"Rollback failed; restore manually with 'rollback-key --backup {backup.path}': {e}", exc_info=True
            )

        self.audit_log.record(
            AuditEvent.ROTATION_FAILED,
            {"stage": stage, "error": str(cause), "backup": backup.path, "rolledBack": rolled_back},
        )
        if rolled_back:
            self.audit_log.record(AuditEvent.ROTATION_ROLLED_BACK, {"backup": backup.path})
            message = f"Key rotation failed and was rolled back: {cause}"
        else:
            message = f"Key rotation failed and rollback did not complete (backup: {backup.path}): {cause}"
        return KeyRotationError(message, rolled_back=rolled_back)

    def rollback(self, backup_path: str | None = None) -> Backup:
        """
        Restore the token file from a backup (the newest by default).

        Used to recover from a rotation that was interrupted before it could
        verify or roll back on its own.

        Raises:
            BackupError: If no matching backup exists or it cannot be restored.
        """
        try:
            backup = self._restore(backup_path)
        except BackupError as e:
            self.audit_log.record(AuditEvent.BACKUP_RESTORE_FAILED, {"backup": backup_path, "error": str(e)})
            logger.error(f"Backup restore failed: {e}")
            raise

        logger.info(f"Restored token file from {backup.path}")
        return backup

    def _restore(self, backup_path: str | None) -> Backup:
        with self.store.lock:
            backup = self.backups.find(backup_path) if backup_path else self.backups.latest()
            if backup is None:
                raise BackupError("No backups available to restore")

            content = self.backups.read(backup)
            if not content.strip():
                raise BackupError(f"Backup {backup.path} is empty")

            try:
                self.store.write_raw(content)
            except OSError as e:
                raise BackupError(f"Failed to restore {backup.path}: {e}") from e

            self.audit_log.record(
                AuditEvent.BACKUP_RESTORED, {"backup": backup.path, "keyVersion": backup.source_key_version}
            )
        return backup
