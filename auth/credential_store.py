"""
Encrypted Credential Store for Google Workspace MCP.

Owns the on-disk encrypted token file. Writes are atomic (temp file +
rename), every successful save or delete is audited, and all mutations are
serialized behind one store-scoped lock that also excludes other processes
(e.g. a `rotate-key` CLI run against a live server).
"""

import logging
import os
from collections.abc import Callable
from threading import RLock
from typing import Any

from filelock import FileLock, Timeout

from auth.audit_log import AuditLogProtocol
from auth.codec import CredentialCodec, blob_from_json, blob_to_json
from auth.credential_types import AuditEvent, EncryptedBlob, KeyVersion, TokenRecord
from auth.key_derivation import KeyDeriver
from core.errors import DecryptionError, ServiceConfigurationError
from core.utils import atomic_write_bytes, ensure_private_directory, hash_token_id

logger = logging.getLogger(__name__)


class _NotAuthenticated:
    """Sentinel returned by load() when no token file exists."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_AUTHENTICATED"


NOT_AUTHENTICATED = _NotAuthenticated()


class StoreLock:
    """
    Re-entrant mutual exclusion for credential file mutations.

    A thread lock orders threads in this process; a lock file next to the
    token file orders processes.
    """

    def __init__(self, lock_path: str):
        self._thread_lock = RLock()
        self._file_lock = FileLock(lock_path)

    def acquire(self, blocking: bool = True) -> bool:
        if not self._thread_lock.acquire(blocking=blocking):
            return False
        try:
            self._file_lock.acquire(timeout=-1 if blocking else 0)
        except Timeout:
            self._thread_lock.release()
            return False
        except BaseException:
            self._thread_lock.release()
            raise
        return True

    def release(self) -> None:
        self._file_lock.release()
        self._thread_lock.release()

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class CredentialStore:
    """
    Single-tenant encrypted token storage.

    The derived key for the current key version is cached in memory; keys for
    other versions are derived on demand from the secret provider and never
    cached.
    """

    def __init__(
        self,
        token_path: str,
        audit_log: AuditLogProtocol,
        secret_provider: Callable[[int], str],
        iterations: int,
        initial_key_version: Callable[[], int] | None = None,
        deriver: KeyDeriver | None = None,
        codec: CredentialCodec | None = None,
    ):
        self.token_path = token_path
        self.audit_log = audit_log
        self.secret_provider = secret_provider
        self.iterations = iterations
        self._initial_key_version = initial_key_version or (lambda: 1)
        self.deriver = deriver or KeyDeriver()
        self.codec = codec or CredentialCodec()

        ensure_private_directory(os.path.dirname(os.path.abspath(token_path)))
        self.lock = StoreLock(f"{token_path}.lock")

        self._key: bytes | None = None
        self._key_version: KeyVersion | None = None
        logger.info(f"CredentialStore initialized with token_path: {token_path}")

    # ------------------------------------------------------------------
    # Raw file access
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return os.path.exists(self.token_path)

    def read_raw(self) -> bytes | None:
        try:
            with open(self.token_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def write_raw(self, data: bytes) -> None:
        """Atomically replace the token file with raw bytes (used by restore and migration)."""
        with self.lock:
            atomic_write_bytes(self.token_path, data)
            self._forget_key()

    def read_blob(self) -> EncryptedBlob | None:
        """
        Parse the token file without decrypting it.

        Raises:
            DecryptionError: If the file is present but malformed.
        """
        raw = self.read_raw()
        if raw is None:
            return None
        return blob_from_json(raw)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _forget_key(self) -> None:
        self._key = None
        self._key_version = None

    def adopt_key(self, key_version: KeyVersion, key: bytes) -> None:
        """Make a key version the current in-memory key."""
        with self.lock:
            self._key_version = key_version
            self._key = key
        logger.info(f"Current key version is now {key_version.version}")

    def current_key_version(self) -> KeyVersion | None:
        """KeyVersion of the live file, or of the in-memory key when no file exists yet."""
        blob = self.read_blob()
        if blob is not None:
            return blob.key_metadata()
        return self._key_version

    def key_for_blob(self, blob: EncryptedBlob, secret: str | None = None) -> bytes:
        """
        Derive (or reuse) the key a blob was encrypted under.

        Raises:
            DecryptionError: If the secret for the blob's key version is not
                configured or the blob's KDF parameters are unacceptable.
        """
        cached = self._key_version
        if (
            secret is None
            and self._key is not None
            and cached is not None
            and cached.version == blob.key_version
            and cached.salt == blob.salt
            and cached.iterations == blob.iterations
        ):
            return self._key

        try:
            if secret is None:
                secret = self.secret_provider(blob.key_version)
            return self.deriver.derive(secret, blob.salt, blob.iterations)
        except ServiceConfigurationError as e:
            raise DecryptionError(f"Cannot derive key version {blob.key_version}: {e}") from e

    def _current_key(self) -> tuple[KeyVersion, bytes]:
        """Key to encrypt with: the cached key, the live file's key, or a fresh version."""
        if self._key is not None and self._key_version is not None:
            return self._key_version, self._key

        try:
            blob = self.read_blob()
        except DecryptionError as e:
            logger.warning(f"Existing token file is unreadable and will be replaced: {e}")
            blob = None

        if blob is not None:
            try:
                key = self.key_for_blob(blob)
                self._key_version, self._key = blob.key_metadata(), key
                return self._key_version, self._key
            except DecryptionError as e:
                logger.warning(f"Cannot reuse key of existing token file, starting a new key: {e}")

        return self.new_key()

    def new_key(self) -> tuple[KeyVersion, bytes]:
        """Derive a fresh key (new salt) at the initial key version and make it current."""
        version = self._initial_key_version()
        key_version, key = self.deriver.new_key_version(self.secret_provider(version), version, self.iterations)
        self.adopt_key(key_version, key)
        return key_version, key

    # ------------------------------------------------------------------
    # Token operations
    # ------------------------------------------------------------------

    def decrypt_blob(self, blob: EncryptedBlob, secret: str | None = None) -> TokenRecord:
        return self.codec.decrypt(blob, self.key_for_blob(blob, secret))

    def load(self) -> TokenRecord | _NotAuthenticated:
        """
        Load and decrypt the stored token record.

        Returns:
            The TokenRecord, or NOT_AUTHENTICATED if no token file exists.

        Raises:
            DecryptionError: If the file is corrupt or the key does not match.
        """
        with self.lock:
            blob = self.read_blob()
            if blob is None:
                logger.debug(f"No token file found at {self.token_path}")
                return NOT_AUTHENTICATED

            key = self.key_for_blob(blob)
            record = self.codec.decrypt(blob, key)
            self._key_version, self._key = blob.key_metadata(), key
            logger.debug(f"Loaded tokens from {self.token_path} (key version {blob.key_version})")
            return record

    def peek(self) -> TokenRecord | _NotAuthenticated:
        """
        Decrypt the stored token record without taking the store lock.

        Writers replace the file atomically, so an unlocked read sees either
        the old or the new file. The in-memory key is left as it is.

        Raises:
            DecryptionError: If the file is corrupt or the key does not match.
        """
        blob = self.read_blob()
        if blob is None:
            return NOT_AUTHENTICATED
        return self.decrypt_blob(blob)

    def save(
        self,
        record: TokenRecord,
        event: AuditEvent = AuditEvent.TOKEN_REFRESHED,
        metadata: dict[str, Any] | None = None,
    ) -> EncryptedBlob:
        """Encrypt and atomically persist a record, then audit the event."""
        with self.lock:
            key_version, key = self._current_key()
            blob = self.codec.encrypt(record, key, key_version)
            atomic_write_bytes(self.token_path, blob_to_json(blob))
            self.audit_log.record(
                event,
                {
                    "tokenId": hash_token_id(record.access_token),
                    "keyVersion": key_version.version,
                    "expiresAt": record.expires_at.isoformat(),
                    **(metadata or {}),
                },
            )
        logger.info(f"Saved tokens to {self.token_path} (key version {key_version.version})")
        return blob

    def delete(self, event: AuditEvent = AuditEvent.TOKEN_DELETED, metadata: dict[str, Any] | None = None) -> bool:
        """
        Delete the token file and audit the event.

        Returns:
            True if a file was removed, False if none existed.
        """
        with self.lock:
            existed = self.exists()
            if existed:
                os.remove(self.token_path)
            self._forget_key()
            self.audit_log.record(event, {"fileExisted": existed, **(metadata or {})})

        if existed:
            logger.info(f"Deleted tokens at {self.token_path}")
        else:
            logger.debug(f"No token file to delete at {self.token_path}")
        return existed
