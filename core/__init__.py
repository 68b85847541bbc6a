"""Core utilities for Google Workspace MCP."""

from core.context import get_audit_session_id, set_audit_session_id
from core.errors import (
    AuthenticationError,
    AuthenticationRequiredError,
    BackupError,
    CredentialError,
    DecryptionError,
    KeyRotationError,
    MigrationError,
    NonRetryableRefreshError,
    RefreshError,
    RejectedRefreshError,
    RetryableRefreshError,
    ServiceConfigurationError,
    WorkspaceMCPError,
)
from core.utils import atomic_write_bytes, ensure_private_directory, hash_token_id

__all__ = [
    "atomic_write_bytes",
    "AuthenticationError",
    "AuthenticationRequiredError",
    "BackupError",
    "CredentialError",
    "DecryptionError",
    "ensure_private_directory",
    "get_audit_session_id",
    "hash_token_id",
    "KeyRotationError",
    "MigrationError",
    "NonRetryableRefreshError",
    "RefreshError",
    "RejectedRefreshError",
    "RetryableRefreshError",
    "ServiceConfigurationError",
    "set_audit_session_id",
    "WorkspaceMCPError",
]
