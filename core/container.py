"""
Dependency Injection Container for Google Workspace MCP.

Provides a centralized container for the credential lifecycle components,
enabling testability through mock injection and decoupling components.
"""

import logging
from dataclasses import dataclass

from auth.audit_log import AuditLog, AuditLogProtocol
from auth.backup_store import BackupStore
from auth.config import CredentialConfig, get_config
from auth.credential_store import CredentialStore
from auth.facade import AuthFacade
from auth.google_oauth import GoogleOAuthClient, OAuthClient, UnconfiguredOAuthClient
from auth.key_derivation import KeyDeriver
from auth.key_rotation import KeyRotator
from auth.migration import TokenMigrator
from auth.refresh_scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """
    Dependency injection container.

    Holds the credential lifecycle components. Anything not provided is built
    from the configuration, so a test can replace just the audit log or the
    OAuth client and get a consistent graph around it.
    """

    config: CredentialConfig | None = None
    audit_log: AuditLogProtocol | None = None
    oauth_client: OAuthClient | None = None
    store: CredentialStore | None = None
    backups: BackupStore | None = None
    rotator: KeyRotator | None = None
    migrator: TokenMigrator | None = None
    scheduler: RefreshScheduler | None = None
    facade: AuthFacade | None = None

    def __post_init__(self) -> None:
        """Initialize with defaults if not provided."""
        if self.config is None:
            self.config = get_config()
        config = self.config

        if self.audit_log is None:
            self.audit_log = AuditLog(config.audit_log_path)

        if self.oauth_client is None:
            if config.is_oauth_configured():
                self.oauth_client = GoogleOAuthClient(config.get_google_oauth_config(), timeout=config.refresh_timeout)
            else:
                logger.warning("Google OAuth client credentials not configured; token refresh is unavailable")
                self.oauth_client = UnconfiguredOAuthClient()

        if self.store is None:
            self.store = CredentialStore(
                config.token_path,
                self.audit_log,
                secret_provider=config.get_secret,
                iterations=config.kdf_iterations,
                initial_key_version=config.latest_key_version,
                deriver=KeyDeriver(),
            )

        if self.backups is None:
            self.backups = BackupStore(config.backup_dir, config.token_path)

        if self.rotator is None:
            self.rotator = KeyRotator(
                self.store,
                self.backups,
                self.audit_log,
                retention=config.backup_retention,
                iterations=config.kdf_iterations,
            )

        if self.migrator is None:
            self.migrator = TokenMigrator(
                self.store, self.backups, self.audit_log, legacy_secret_provider=lambda: config.get_secret(1)
            )

        if self.scheduler is None:
            self.scheduler = RefreshScheduler(
                self.store,
                self.oauth_client,
                self.audit_log,
                refresh_interval=config.refresh_interval,
                preemptive_buffer=config.preemptive_buffer,
                max_retries=config.max_retries,
                retry_base_delay=config.retry_base_delay,
            )

        if self.facade is None:
            self.facade = AuthFacade(self.store, self.scheduler)


# Global container instance
_container: Container | None = None


def get_container() -> Container:
    """
    Get the global container instance.

    Creates a new container with default implementations if none exists.

    Returns:
        The global Container instance.
    """
    global _container
    if _container is None:
        _container = Container()
        logger.debug("Initialized default dependency container")
    return _container


def set_container(container: Container) -> None:
    """
    Set the global container instance.

    Use this for testing to inject mock implementations.

    Args:
        container: The container to use as the global instance.
    """
    global _container
    _container = container
    logger.debug("Set custom dependency container")


def reset_container() -> None:
    """
    Reset the global container.

    Stops the refresh timer of the current container, if any. Use this
    between tests to ensure a clean state.
    """
    global _container
    if _container is not None and _container.facade is not None:
        _container.facade.stop()
    _container = None
    logger.debug("Reset dependency container")
