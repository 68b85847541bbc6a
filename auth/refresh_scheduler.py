"""
Token refresh state machine.

UNAUTHENTICATED -> AUTHENTICATED      on record_initial_tokens() or a stored record
AUTHENTICATED   -> REFRESHING         on the periodic timer or refresh_now()
REFRESHING      -> AUTHENTICATED      on success
REFRESHING      -> FAILED             after max_retries retryable failures or a rejection
                                      other than invalid_grant (tokens kept)
REFRESHING      -> REVOKED            on invalid_grant (tokens deleted)

At most one refresh runs at a time; concurrent callers wait for the
in-flight outcome. The whole load -> refresh -> save cycle runs under the
credential store's lock so a key rotation cannot interleave with it.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from auth.audit_log import AuditLogProtocol
from auth.credential_store import CredentialStore
from auth.credential_types import AuditEvent, AuthState, TokenRecord, utcnow
from auth.google_oauth import OAuthClient
from core.errors import (
    AuthenticationRequiredError,
    NonRetryableRefreshError,
    RejectedRefreshError,
    RetryableRefreshError,
)
from core.utils import hash_token_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerSnapshot:
    state: AuthState
    record: TokenRecord | None
    last_error: str | None
    last_refresh_at: datetime | None


class RefreshScheduler:
    """Keeps the stored access token fresh and tracks authentication state."""

    def __init__(
        self,
        store: CredentialStore,
        oauth_client: OAuthClient,
        audit_log: AuditLogProtocol,
        refresh_interval: float,
        preemptive_buffer: float,
        max_retries: int,
        retry_base_delay: float,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.oauth_client = oauth_client
        self.audit_log = audit_log
        self.refresh_interval = refresh_interval
        self.preemptive_buffer = preemptive_buffer
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.clock = clock
        self.sleep = sleep

        self._condition = threading.Condition()
        self._state = AuthState.UNAUTHENTICATED
        self._record: TokenRecord | None = None
        self._last_error: str | None = None
        self._last_refresh_at: datetime | None = None
        self._refreshing = False
        # Incremented every time an in-flight refresh finishes
        self._generation = 0

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        with self._condition:
            return self._state

    @property
    def is_refreshing(self) -> bool:
        with self._condition:
            return self._refreshing

    def snapshot(self) -> SchedulerSnapshot:
        with self._condition:
            return SchedulerSnapshot(
                state=self._state,
                record=self._record,
                last_error=self._last_error,
                last_refresh_at=self._last_refresh_at,
            )

    def _set_state(self, state: AuthState, record: TokenRecord | None = None, error: str | None = None) -> None:
        with self._condition:
            if self._state != state:
                logger.info(f"Auth state {self._state.value} -> {state.value}")
            self._state = state
            self._record = record
            self._last_error = error

    def initialize(self) -> AuthState:
        """
        Load the stored record, if any.

        Raises:
            DecryptionError: If the token file exists but cannot be decrypted.
        """
        try:
            record = self.store.load()
        except Exception as e:
            self._set_state(AuthState.UNAUTHENTICATED, error=str(e))
            raise

        if record:
            self._set_state(AuthState.AUTHENTICATED, record)
        else:
            self._set_state(AuthState.UNAUTHENTICATED)
        return self.state

    def record_initial_tokens(self, record: TokenRecord) -> None:
        """Persist tokens from an interactive sign-in. The only way out of REVOKED."""
        with self.store.lock:
            self.store.save(record, event=AuditEvent.TOKEN_ACQUIRED)
            self._set_state(AuthState.AUTHENTICATED, record)
        with self._condition:
            self._last_refresh_at = self.clock()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _outcome(self) -> TokenRecord:
        """Result of the last finished refresh, as seen by a waiting caller."""
        if self._state == AuthState.AUTHENTICATED and self._record is not None:
            return self._record
        raise AuthenticationRequiredError(self._last_error or f"token refresh ended in state {self._state.value}")

    def refresh_now(self) -> TokenRecord:
        """
        Refresh the access token synchronously.

        Joins an in-flight refresh instead of starting a second one.

        Raises:
            AuthenticationRequiredError: If not authenticated, revoked, or the
                refresh failed after all retries.
        """
        with self._condition:
            if self._refreshing:
                generation = self._generation
                logger.debug("Refresh already in flight; waiting for its outcome")
                self._condition.wait_for(lambda: self._generation != generation)
                return self._outcome()

            if self._state == AuthState.REVOKED:
                raise AuthenticationRequiredError("the refresh token was revoked")
            if self._record is None:
                raise AuthenticationRequiredError("no stored tokens")

            self._refreshing = True
            self._state = AuthState.REFRESHING

        try:
            return self._refresh_cycle()
        except Exception as e:
            with self._condition:
                if self._state == AuthState.REFRESHING:
                    self._state = AuthState.FAILED
                    self._last_error = str(e)
            raise
        finally:
            with self._condition:
                self._refreshing = False
                self._generation += 1
                self._condition.notify_all()

    def _refresh_cycle(self) -> TokenRecord:
        with self.store.lock:
            # Re-read under the lock: another process may have refreshed,
            # rotated the key or revoked the tokens since we last looked.
            current = self.store.load()
            if not current:
                self._set_state(AuthState.UNAUTHENTICATED, error="no stored tokens")
                raise AuthenticationRequiredError("no stored tokens")

            last_error: RetryableRefreshError | None = None
            for attempt in range(self.max_retries):
                try:
                    issued = self.oauth_client.refresh(current.refresh_token)
                except NonRetryableRefreshError as e:
                    logger.error(f"Refresh token rejected, deleting stored tokens: {e.reason}")
                    self.store.delete(event=AuditEvent.TOKEN_REVOKED, metadata={"reason": e.reason})
                    self._set_state(AuthState.REVOKED, error=f"the refresh token was revoked ({e.reason})")
                    raise AuthenticationRequiredError(f"the refresh token was revoked ({e.reason})") from e
                except RejectedRefreshError as e:
                    # Stored tokens may still be good once the client settings are fixed
                    self.audit_log.record(
                        AuditEvent.TOKEN_REFRESH_FAILED,
                        {"attempts": attempt + 1, "error": e.reason, "tokenId": hash_token_id(current.access_token)},
                    )
                    self._set_state(AuthState.FAILED, current, error=f"token refresh was rejected ({e.reason})")
                    logger.error(f"Token refresh rejected, keeping stored tokens: {e.reason}")
                    raise AuthenticationRequiredError(f"token refresh was rejected ({e.reason})") from e
                except RetryableRefreshError as e:
                    last_error = e
                    if attempt + 1 < self.max_retries:
                        delay = self.retry_base_delay * (2**attempt)
                        logger.warning(
                            f"Token refresh attempt {attempt + 1}/{self.max_retries} failed: {e.reason}; "
                            f"retrying in {delay:.1f}s"
                        )
                        self.sleep(delay)
                    continue

                refreshed = current.with_updates(
                    access_token=issued.access_token,
                    expires_at=issued.expires_at,
                    refresh_token=issued.refresh_token,
                    scope=issued.scope,
                    token_type=issued.token_type,
                )
                self.store.save(refreshed, event=AuditEvent.TOKEN_REFRESHED, metadata={"attempts": attempt + 1})
                self._set_state(AuthState.AUTHENTICATED, refreshed)
                with self._condition:
                    self._last_refresh_at = self.clock()
                logger.info(f"Access token refreshed, expires at {refreshed.expires_at.isoformat()}")
                return refreshed

            reason = last_error.reason if last_error else "unknown error"
            self.audit_log.record(
                AuditEvent.TOKEN_REFRESH_FAILED,
                {"attempts": self.max_retries, "error": reason, "tokenId": hash_token_id(current.access_token)},
            )
            self._set_state(AuthState.FAILED, current, error=f"token refresh failed after {self.max_retries} attempts")
            logger.error(f"Token refresh failed after {self.max_retries} attempts: {reason}")
            raise AuthenticationRequiredError(f"token refresh failed after {self.max_retries} attempts") from last_error

    def needs_refresh(self, now: datetime | None = None) -> bool:
        with self._condition:
            if self._state == AuthState.FAILED:
                return self._record is not None
            if self._state != AuthState.AUTHENTICATED or self._record is None:
                return False
            return self._record.expires_within(self.preemptive_buffer, now or self.clock())

    def check_and_refresh(self) -> bool:
        """
        Timer tick: refresh if the token is inside the preemptive window or the
        last refresh failed. Never raises for authentication failures.

        Returns:
            True if a refresh ran and succeeded.
        """
        if not self.needs_refresh():
            return False
        try:
            self.refresh_now()
            return True
        except AuthenticationRequiredError as e:
            logger.warning(f"Scheduled token refresh did not succeed: {e}")
            return False

    # ------------------------------------------------------------------
    # Background timer
    # ------------------------------------------------------------------

    def _run(self) -> None:
        logger.info(f"Token refresh timer started (interval {self.refresh_interval}s)")
        while not self._stop_event.wait(self.refresh_interval):
            try:
                self.check_and_refresh()
            except Exception as e:
                logger.error(f"Unexpected error in token refresh timer: {e}", exc_info=True)
        logger.info("Token refresh timer stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.debug("Token refresh timer already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="token-refresh", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
