# Make the auth directory a Python package
# Public API exports from canonical locations

from auth.config import (
    ENCRYPTION_KEY_ENV,
    GOOGLE_WORKSPACE_MCP_APP_NAME,
    GOOGLE_WORKSPACE_MCP_CREDENTIALS_DIR,
    MIN_KDF_ITERATIONS,
    CredentialConfig,
    encryption_key_env_name,
    get_config,
    get_credentials_directory,
    reload_config,
)
from auth.credential_types import AuditEvent, AuthState, HealthStatus, TokenRecord

__all__ = [
    "AuditEvent",
    "AuthState",
    "CredentialConfig",
    "encryption_key_env_name",
    "get_config",
    "get_credentials_directory",
    "HealthStatus",
    "reload_config",
    "TokenRecord",
    "ENCRYPTION_KEY_ENV",
    "GOOGLE_WORKSPACE_MCP_APP_NAME",
    "GOOGLE_WORKSPACE_MCP_CREDENTIALS_DIR",
    "MIN_KDF_ITERATIONS",
]
