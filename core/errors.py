"""
Custom error types for the credential lifecycle.

Provides user-friendly error messages and structured error handling.
"""

# =============================================================================
# Base Exception Hierarchy
# =============================================================================


class WorkspaceMCPError(Exception):
    """Base exception for all Google Workspace MCP errors."""

    pass


# =============================================================================
# Credential Storage Errors
# =============================================================================


class CredentialError(WorkspaceMCPError):
    """Raised when the encrypted credential file cannot be handled."""

    pass


class DecryptionError(CredentialError):
    """Raised when a blob is corrupt or was encrypted under a different key.

    Never carries partial plaintext.
    """

    pass


class KeyRotationError(CredentialError):
    """Raised when a key rotation step fails."""

    def __init__(self, message: str, rolled_back: bool = False):
        super().__init__(message)
        self.rolled_back = rolled_back


class BackupError(CredentialError):
    """Raised when a backup cannot be written, read or restored."""

    pass


class MigrationError(CredentialError):
    """Raised when a legacy token file cannot be migrated."""

    pass


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(WorkspaceMCPError):
    """Raised when authentication fails or credentials are invalid."""

    pass


class AuthenticationRequiredError(AuthenticationError):
    """Raised when no valid token exists and none can be obtained automatically."""

    def __init__(self, reason: str):
        super().__init__(f"Authentication required: {reason}. Run 'gws-credentials auth' to sign in again.")
        self.reason = reason


class RefreshError(AuthenticationError):
    """Raised when token refresh fails."""

    def __init__(self, reason: str):
        super().__init__(f"Failed to refresh token: {reason}")
        self.reason = reason


class RetryableRefreshError(RefreshError):
    """Transient refresh failure (network, timeout, rate limit)."""

    pass


class NonRetryableRefreshError(RefreshError):
    """Permanent refresh failure (invalid or revoked grant)."""

    pass


class RejectedRefreshError(RefreshError):
    """Refresh refused for a reason other than a revoked grant (client credentials, malformed response)."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ServiceConfigurationError(WorkspaceMCPError):
    """Raised when a service is misconfigured."""

    pass
