"""
Credential types subpackage for Google Workspace MCP.

This package contains the dataclasses and enums shared by the credential
store, key rotation, refresh scheduler and audit log.
"""

from auth.credential_types.types import (
    FORMAT_VERSION,
    AuditEntry,
    AuditEvent,
    AuthState,
    Backup,
    EncryptedBlob,
    HealthStatus,
    KeyVersion,
    TokenRecord,
    utcnow,
)

__all__ = [
    "FORMAT_VERSION",
    "AuditEntry",
    "AuditEvent",
    "AuthState",
    "Backup",
    "EncryptedBlob",
    "HealthStatus",
    "KeyVersion",
    "TokenRecord",
    "utcnow",
]
