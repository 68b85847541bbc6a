"""
Credential Lifecycle Configuration for Google Workspace MCP.

Provides a single source of truth for token storage, refresh, key rotation
and OAuth client settings. Every value comes from the process environment
with the documented default.
"""

import os
import re
from typing import Any

from core.errors import ServiceConfigurationError

# Application metadata
GOOGLE_WORKSPACE_MCP_APP_NAME = "GWS MCP Advanced"
GOOGLE_WORKSPACE_MCP_CREDENTIALS_DIR = "~/.config/gws-mcp-advanced"

# Encryption secrets: v1 lives in the base variable, vN in "<base>_V{N}".
ENCRYPTION_KEY_ENV = "GWS_TOKEN_ENCRYPTION_KEY"
_VERSIONED_KEY_ENV = re.compile(rf"^{ENCRYPTION_KEY_ENV}_V(\d+)$")

MIN_KDF_ITERATIONS = 100_000
DEFAULT_REFRESH_INTERVAL_SECONDS = 30 * 60
DEFAULT_PREEMPTIVE_BUFFER_SECONDS = 10 * 60
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_REFRESH_TIMEOUT_SECONDS = 30.0
DEFAULT_BACKUP_RETENTION = 5

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ServiceConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ServiceConfigurationError(f"{name} must be at least {minimum}, got {value}")
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ServiceConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ServiceConfigurationError(f"{name} must be at least {minimum}, got {value}")
    return value


def get_credentials_directory() -> str:
    """
    Get the directory for storing tokens, backups and the audit log.

    Returns:
        Expanded path to credentials directory.
    """
    base_dir = os.getenv("WORKSPACE_MCP_CONFIG_DIR", GOOGLE_WORKSPACE_MCP_CREDENTIALS_DIR)
    return os.path.expanduser(base_dir)


def encryption_key_env_name(version: int) -> str:
    """Name of the environment variable holding the secret for a key version."""
    if version == 1:
        return ENCRYPTION_KEY_ENV
    return f"{ENCRYPTION_KEY_ENV}_V{version}"


class CredentialConfig:
    """
    Centralized configuration for the credential lifecycle.

    Values are read once from the environment at construction; use
    reload_config() after changing the environment.
    """

    def __init__(self):
        base_dir = get_credentials_directory()

        # Storage locations
        self.token_path = os.path.expanduser(os.getenv("GWS_TOKEN_STORAGE_PATH", os.path.join(base_dir, "tokens.json")))
        self.backup_dir = os.path.expanduser(os.getenv("GWS_TOKEN_BACKUP_DIR", os.path.join(base_dir, "backups")))
        self.audit_log_path = os.path.expanduser(
            os.getenv("GWS_TOKEN_AUDIT_LOG_PATH", os.path.join(base_dir, "audit.log"))
        )

        # Key derivation
        self.kdf_iterations = _env_int("GWS_TOKEN_KDF_ITERATIONS", MIN_KDF_ITERATIONS)
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            raise ServiceConfigurationError(
                f"GWS_TOKEN_KDF_ITERATIONS must be at least {MIN_KDF_ITERATIONS}, got {self.kdf_iterations}"
            )

        # Refresh policy
        self.refresh_interval = _env_float("GWS_TOKEN_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL_SECONDS, minimum=1)
        self.preemptive_buffer = _env_float("GWS_TOKEN_PREEMPTIVE_REFRESH", DEFAULT_PREEMPTIVE_BUFFER_SECONDS)
        self.max_retries = _env_int("GWS_TOKEN_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=1)
        self.retry_base_delay = _env_float("GWS_TOKEN_RETRY_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS)
        self.refresh_timeout = _env_float("GWS_TOKEN_REFRESH_TIMEOUT", DEFAULT_REFRESH_TIMEOUT_SECONDS, minimum=1)

        # Backups
        self.backup_retention = _env_int("GWS_TOKEN_BACKUP_RETENTION", DEFAULT_BACKUP_RETENTION, minimum=1)

        # OAuth client configuration
        self.client_id = os.getenv("GOOGLE_OAUTH_CLIENT_ID") or None
        self.client_secret = os.getenv("GOOGLE_OAUTH_CLIENT_SECRET") or None
        self.token_uri = os.getenv("GOOGLE_OAUTH_TOKEN_URI", GOOGLE_TOKEN_URI)

    def get_secret(self, version: int) -> str:
        """
        Get the operator-supplied encryption secret for a key version.

        Raises:
            ServiceConfigurationError: If the variable for that version is unset.
        """
        env_name = encryption_key_env_name(version)
        secret = os.getenv(env_name)
        if not secret:
            raise ServiceConfigurationError(
                f"{env_name} environment variable is required to use key version {version}. "
                "Generate a secret with: openssl rand -base64 32"
            )
        return secret

    def has_secret(self, version: int) -> bool:
        """Check whether the secret for a key version is configured."""
        return bool(os.getenv(encryption_key_env_name(version)))

    def latest_key_version(self) -> int:
        """Highest key version with a configured secret; new token files start here."""
        versions = [1]
        for name, value in os.environ.items():
            match = _VERSIONED_KEY_ENV.match(name)
            if match and value:
                versions.append(int(match.group(1)))
        return max(versions)

    def is_oauth_configured(self) -> bool:
        """
        Check if OAuth is properly configured.

        Returns:
            True if OAuth client credentials are available
        """
        return bool(self.client_id and self.client_secret)

    def get_google_oauth_config(self) -> dict[str, Any]:
        """
        Get the OAuth configuration in Google's expected format.

        Returns:
            OAuth client configuration in Google's expected format.

        Raises:
            ServiceConfigurationError: If OAuth credentials are not configured.
        """
        if not self.is_oauth_configured():
            raise ServiceConfigurationError(
                "Google OAuth credentials not configured. "
                "Set GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET environment variables."
            )

        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": self.token_uri,
                "auth_provider_x509_cert_url": "https://www.googleapis.com/oauth2/v1/certs",
                "redirect_uris": ["http://localhost"],
            }
        }

    def get_environment_summary(self) -> dict:
        """
        Get a summary of the current configuration.

        Returns:
            Dictionary with configuration summary (excluding secrets)
        """
        return {
            "token_path": self.token_path,
            "backup_dir": self.backup_dir,
            "audit_log_path": self.audit_log_path,
            "kdf_iterations": self.kdf_iterations,
            "refresh_interval": self.refresh_interval,
            "preemptive_buffer": self.preemptive_buffer,
            "max_retries": self.max_retries,
            "retry_base_delay": self.retry_base_delay,
            "refresh_timeout": self.refresh_timeout,
            "backup_retention": self.backup_retention,
            "client_configured": bool(self.client_id),
            "encryption_key_configured": self.has_secret(1),
        }


# Global configuration instance
_config: CredentialConfig | None = None


def get_config() -> CredentialConfig:
    """
    Get the global configuration instance.

    Returns:
        The singleton configuration instance
    """
    global _config
    if _config is None:
        _config = CredentialConfig()
    return _config


def reload_config() -> CredentialConfig:
    """
    Reload the configuration from environment variables.

    This is useful for testing or when environment variables change.

    Returns:
        The reloaded configuration instance
    """
    global _config
    _config = CredentialConfig()
    return _config
