"""
Type definitions for the credential lifecycle.

This module provides structured types for tokens, encrypted blobs, key
versions, audit entries and backups, improving code maintainability and
type safety.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from core.errors import DecryptionError

# Current on-disk format. Version 1 was the legacy colon-separated hex format.
FORMAT_VERSION = 2


class AuditEvent(str, Enum):
    """Events recorded in the append-only audit log."""

    TOKEN_ACQUIRED = "TOKEN_ACQUIRED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_DELETED = "TOKEN_DELETED"
    KEY_ROTATED = "KEY_ROTATED"
    ROTATION_FAILED = "ROTATION_FAILED"
    ROTATION_ROLLED_BACK = "ROTATION_ROLLED_BACK"
    BACKUP_RESTORED = "BACKUP_RESTORED"
    BACKUP_RESTORE_FAILED = "BACKUP_RESTORE_FAILED"
    TOKENS_MIGRATED = "TOKENS_MIGRATED"
    MIGRATION_FAILED = "MIGRATION_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    KEYS_VERIFIED = "KEYS_VERIFIED"


class AuthState(str, Enum):
    """States of the refresh state machine."""

    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    REFRESHING = "REFRESHING"
    FAILED = "FAILED"
    REVOKED = "REVOKED"


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        # Naive datetimes are assumed to already represent UTC
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class TokenRecord:
    """
    An OAuth2 token pair with its metadata.

    Token values are excluded from repr so a record can never leak into logs.
    """

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    scope: str
    token_type: str
    expires_at: datetime

    def __post_init__(self):
        object.__setattr__(self, "expires_at", _parse_timestamp(self.expires_at))

    def seconds_until_expiry(self, now: datetime | None = None) -> float:
        return (self.expires_at - (now or utcnow())).total_seconds()

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.seconds_until_expiry(now) <= 0

    def expires_within(self, buffer_seconds: float, now: datetime | None = None) -> bool:
        """Check if the token expires within the given window (or already has)."""
        return self.seconds_until_expiry(now) < buffer_seconds

    def with_updates(
        self,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
        scope: str | None = None,
        token_type: str | None = None,
    ) -> "TokenRecord":
        """Return a refreshed copy, keeping the old refresh token when none was issued."""
        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            scope=scope or self.scope,
            token_type=token_type or self.token_type,
            expires_at=expires_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TokenRecord":
        """
        Build a record from its dict form.

        Accepts the legacy field name expiry_date (epoch milliseconds).

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError("Token record must be a JSON object")

        expires_at = data.get("expires_at", data.get("expiry_date"))
        for name in ("access_token", "refresh_token", "scope", "token_type"):
            if not isinstance(data.get(name), str):
                raise ValueError(f"Token record field '{name}' is missing or not a string")
        if expires_at is None:
            raise ValueError("Token record field 'expires_at' is missing")

        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            scope=data["scope"],
            token_type=data["token_type"],
            expires_at=_parse_timestamp(expires_at),
        )


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _b64decode(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise DecryptionError(f"Encrypted blob field '{name}' is missing or not a string")
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"Encrypted blob field '{name}' is not valid base64") from e


@dataclass(frozen=True)
class KeyVersion:
    """Identifies a derived key: its version number and KDF parameters."""

    version: int
    created_at: datetime
    iterations: int
    salt: bytes = field(repr=False)

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or utcnow()) - self.created_at


@dataclass(frozen=True)
class EncryptedBlob:
    """On-disk representation of an encrypted TokenRecord."""

    format_version: int
    key_version: int
    iv: bytes
    auth_tag: bytes
    ciphertext: bytes
    salt: bytes
    iterations: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatVersion": self.format_version,
            "keyVersion": self.key_version,
            "iv": _b64encode(self.iv),
            "authTag": _b64encode(self.auth_tag),
            "ciphertext": _b64encode(self.ciphertext),
            "salt": _b64encode(self.salt),
            "iterations": self.iterations,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EncryptedBlob":
        """
        Parse the on-disk JSON object.

        Raises:
            DecryptionError: If the object is malformed.
        """
        if not isinstance(data, dict):
            raise DecryptionError("Encrypted blob must be a JSON object")

        format_version = data.get("formatVersion")
        if format_version != FORMAT_VERSION:
            raise DecryptionError(f"Unsupported token file format version: {format_version!r}")

        key_version = data.get("keyVersion")
        iterations = data.get("iterations")
        if not isinstance(key_version, int) or key_version < 1:
            raise DecryptionError("Encrypted blob has an invalid keyVersion")
        if not isinstance(iterations, int) or iterations < 1:
            raise DecryptionError("Encrypted blob has an invalid iterations count")

        try:
            created_at = _parse_timestamp(data.get("createdAt"))
        except ValueError as e:
            raise DecryptionError("Encrypted blob has an invalid createdAt") from e

        return cls(
            format_version=format_version,
            key_version=key_version,
            iv=_b64decode(data.get("iv"), "iv"),
            auth_tag=_b64decode(data.get("authTag"), "authTag"),
            ciphertext=_b64decode(data.get("ciphertext"), "ciphertext"),
            salt=_b64decode(data.get("salt"), "salt"),
            iterations=iterations,
            created_at=created_at,
        )

    def key_metadata(self) -> KeyVersion:
        """The KeyVersion this blob was encrypted under."""
        return KeyVersion(
            version=self.key_version,
            created_at=self.created_at,
            iterations=self.iterations,
            salt=self.salt,
        )


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    event: AuditEvent
    metadata: dict[str, Any]
    session_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event": self.event.value,
            "metadata": self.metadata,
            "sessionId": self.session_id,
        }


@dataclass(frozen=True)
class Backup:
    """A timestamped snapshot of the encrypted credential file."""

    timestamp: datetime
    source_key_version: int | None
    path: str
