"""
Credential access for the rest of the server.

Tool handlers call get_valid_access_token(); health endpoints and the CLI
call get_health(). Neither needs to know about the store, the key or the
refresh machinery behind them.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from auth.credential_store import CredentialStore
from auth.credential_types import AuthState, HealthStatus
from auth.refresh_scheduler import RefreshScheduler
from core.errors import AuthenticationRequiredError, DecryptionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    expires_in: int | None
    state: AuthState
    message: str
    checked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "expiresIn": self.expires_in,
            "state": self.state.value,
            "message": self.message,
            "checkedAt": self.checked_at.isoformat(),
        }


class AuthFacade:
    """Single entry point for obtaining a usable access token."""

    def __init__(self, store: CredentialStore, scheduler: RefreshScheduler):
        self.store = store
        self.scheduler = scheduler
        self._init_lock = threading.Lock()
        self._initialized = False

    def _ensure_initialized(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            try:
                self.scheduler.initialize()
            except DecryptionError as e:
                logger.error(f"Stored tokens cannot be decrypted: {e}")
                raise AuthenticationRequiredError(f"stored tokens cannot be decrypted ({e})") from e
            self._initialized = True

    def get_valid_access_token(self) -> str:
        """
        Return an access token that is not inside the preemptive refresh window.

        Raises:
            AuthenticationRequiredError: If no usable token exists and none can
                be obtained without the user signing in again.
        """
        self._ensure_initialized()
        snapshot = self.scheduler.snapshot()

        if snapshot.state == AuthState.REVOKED:
            raise AuthenticationRequiredError("the refresh token was revoked")
        if snapshot.record is None:
            raise AuthenticationRequiredError("no stored tokens")

        if snapshot.state == AuthState.AUTHENTICATED and not snapshot.record.expires_within(
            self.scheduler.preemptive_buffer, self.scheduler.clock()
        ):
            return snapshot.record.access_token

        logger.info("Access token expires soon or last refresh failed; refreshing synchronously")
        try:
            return self.scheduler.refresh_now().access_token
        except DecryptionError as e:
            raise AuthenticationRequiredError(f"stored tokens cannot be decrypted ({e})") from e

    def get_health(self) -> HealthReport:
        """Report credential health. Never raises and never refreshes."""
        now = self.scheduler.clock()
        try:
            return self._evaluate_health(now)
        except Exception as e:
            logger.error(f"Unexpected health check error: {e}", exc_info=True)
            return HealthReport(HealthStatus.UNHEALTHY, None, self.scheduler.state, f"Health check failed: {e}", now)

    def _evaluate_health(self, now: datetime) -> HealthReport:
        snapshot = self.scheduler.snapshot()
        state = snapshot.state
        record = snapshot.record

        if not self._initialized:
            # Read-only look at the file; the scheduler and store lock are left untouched
            try:
                loaded = self.store.peek()
            except DecryptionError as e:
                return HealthReport(
                    HealthStatus.UNHEALTHY, None, state, f"Stored tokens cannot be decrypted: {e}", now
                )
            if loaded:
                record = loaded
                state = AuthState.AUTHENTICATED

        if state == AuthState.REVOKED:
            return HealthReport(
                HealthStatus.UNHEALTHY, None, state, "Refresh token was revoked; sign in again", now
            )
        if state == AuthState.FAILED:
            return HealthReport(
                HealthStatus.UNHEALTHY,
                int(record.seconds_until_expiry(now)) if record else None,
                state,
                snapshot.last_error or "Token refresh failed",
                now,
            )
        if record is None:
            return HealthReport(HealthStatus.UNHEALTHY, None, state, "Not authenticated", now)

        expires_in = int(record.seconds_until_expiry(now))
        if state == AuthState.REFRESHING:
            return HealthReport(HealthStatus.DEGRADED, expires_in, state, "Token refresh in progress", now)
        if record.is_expired(now):
            return HealthReport(HealthStatus.UNHEALTHY, expires_in, state, "Access token is expired", now)
        if not record.refresh_token:
            return HealthReport(HealthStatus.UNHEALTHY, expires_in, state, "No refresh token available", now)
        if record.expires_within(self.scheduler.preemptive_buffer, now):
            return HealthReport(HealthStatus.DEGRADED, expires_in, state, "Access token expires soon", now)
        return HealthReport(HealthStatus.HEALTHY, expires_in, state, "Access token valid", now)

    def start(self) -> None:
        """Load stored tokens (if readable) and start the background refresh timer."""
        try:
            self._ensure_initialized()
        except AuthenticationRequiredError as e:
            logger.warning(f"Starting without usable tokens: {e}")
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
