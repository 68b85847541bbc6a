"""Tests for the token refresh state machine."""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from auth.credential_store import NOT_AUTHENTICATED
from auth.credential_types import AuditEvent, AuthState
from auth.google_oauth import GoogleOAuthClient
from auth.refresh_scheduler import RefreshScheduler
from core.errors import (
    AuthenticationRequiredError,
    DecryptionError,
    NonRetryableRefreshError,
    RejectedRefreshError,
    RetryableRefreshError,
)


@pytest.fixture
def authenticated(scheduler, store, make_record):
    """A scheduler initialized from a stored record that expires in one hour."""
    record = make_record()
    store.save(record)
    scheduler.initialize()
    return record


class TestInitialize:
    """Loading state from the store."""

    def test_no_tokens_is_unauthenticated(self, scheduler):
        assert scheduler.initialize() == AuthState.UNAUTHENTICATED
        assert scheduler.snapshot().record is None

    def test_stored_tokens_are_authenticated(self, scheduler, authenticated):
        assert scheduler.state == AuthState.AUTHENTICATED
        assert scheduler.snapshot().record == authenticated

    def test_corrupt_file_propagates(self, scheduler, token_path):
        with open(token_path, "w") as f:
            f.write("{broken")

        with pytest.raises(DecryptionError):
            scheduler.initialize()
        assert scheduler.state == AuthState.UNAUTHENTICATED

    def test_record_initial_tokens(self, scheduler, store, audit_log, make_record):
        record = make_record()

        scheduler.record_initial_tokens(record)

        assert scheduler.state == AuthState.AUTHENTICATED
        assert store.load() == record
        assert audit_log.last(AuditEvent.TOKEN_ACQUIRED) is not None
        assert scheduler.snapshot().last_refresh_at is not None


class TestRefreshNow:
    """Synchronous refreshes."""

    def test_refresh_persists_new_token(self, scheduler, store, oauth_client, audit_log, authenticated):
        refreshed = scheduler.refresh_now()

        assert refreshed.access_token == "ya29.refreshed-1"
        assert store.load() == refreshed
        assert scheduler.state == AuthState.AUTHENTICATED
        assert audit_log.last(AuditEvent.TOKEN_REFRESHED).metadata["attempts"] == 1
        assert oauth_client.refresh_tokens_seen == [authenticated.refresh_token]

    def test_refresh_keeps_refresh_token_when_not_reissued(self, scheduler, authenticated):
        assert scheduler.refresh_now().refresh_token == authenticated.refresh_token

    def test_refresh_takes_rotated_refresh_token(self, scheduler, store, oauth_client, authenticated):
        oauth_client.queue(oauth_client.issue("ya29.new", refresh_token="1//rotated"))

        scheduler.refresh_now()

        assert store.load().refresh_token == "1//rotated"

    def test_refresh_without_tokens(self, scheduler):
        scheduler.initialize()

        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()

    def test_refresh_reads_latest_file(self, scheduler, store, oauth_client, authenticated, make_record):
        # Another process refreshed and stored a newer refresh token
        store.save(make_record(refresh_token="1//from-other-process"))

        scheduler.refresh_now()

        assert oauth_client.refresh_tokens_seen == ["1//from-other-process"]

    def test_tokens_deleted_elsewhere(self, scheduler, store, authenticated):
        store.delete()

        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()
        assert scheduler.state == AuthState.UNAUTHENTICATED


class TestRetries:
    """Retryable and non-retryable failures."""

    def test_transient_failure_then_success(self, scheduler, oauth_client, sleeps, audit_log, authenticated):
        oauth_client.queue(RetryableRefreshError("timeout"))

        scheduler.refresh_now()

        assert oauth_client.refresh_calls == 2
        assert sleeps == [1.0]
        assert audit_log.last(AuditEvent.TOKEN_REFRESHED).metadata["attempts"] == 2

    def test_exhausted_retries_enter_failed(self, scheduler, store, oauth_client, sleeps, audit_log, authenticated):
        oauth_client.queue(*(RetryableRefreshError("503 from token endpoint") for _ in range(3)))

        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()

        assert scheduler.state == AuthState.FAILED
        assert oauth_client.refresh_calls == 3
        assert sleeps == [1.0, 2.0]
        entry = audit_log.last(AuditEvent.TOKEN_REFRESH_FAILED)
        assert entry.metadata["attempts"] == 3
        assert entry.metadata["error"] == "503 from token endpoint"
        # Tokens are kept so a later attempt can recover
        assert store.load() == authenticated

    def test_failed_state_recovers_on_next_refresh(self, scheduler, oauth_client, authenticated):
        oauth_client.queue(*(RetryableRefreshError("timeout") for _ in range(3)))
        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()

        assert scheduler.needs_refresh() is True
        scheduler.refresh_now()

        assert scheduler.state == AuthState.AUTHENTICATED

    def test_revoked_refresh_token_deletes_tokens(self, scheduler, store, oauth_client, audit_log, authenticated):
        oauth_client.queue(NonRetryableRefreshError("invalid_grant"))

        with pytest.raises(AuthenticationRequiredError, match="revoked"):
            scheduler.refresh_now()

        assert scheduler.state == AuthState.REVOKED
        assert oauth_client.refresh_calls == 1
        assert store.load() is NOT_AUTHENTICATED
        assert audit_log.last(AuditEvent.TOKEN_REVOKED).metadata["reason"] == "invalid_grant"

    def test_revoked_state_blocks_refresh_until_new_sign_in(self, scheduler, oauth_client, authenticated, make_record):
        oauth_client.queue(NonRetryableRefreshError("invalid_grant"))
        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()

        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()
        assert oauth_client.refresh_calls == 1

        scheduler.record_initial_tokens(make_record())
        assert scheduler.state == AuthState.AUTHENTICATED

    def test_rejected_refresh_keeps_tokens(self, scheduler, store, oauth_client, sleeps, audit_log, authenticated):
        oauth_client.queue(RejectedRefreshError("invalid_client"))

        with pytest.raises(AuthenticationRequiredError, match="rejected"):
            scheduler.refresh_now()

        assert scheduler.state == AuthState.FAILED
        assert oauth_client.refresh_calls == 1
        assert sleeps == []
        assert store.load() == authenticated
        assert audit_log.last(AuditEvent.TOKEN_REFRESH_FAILED).metadata["error"] == "invalid_client"
        assert audit_log.last(AuditEvent.TOKEN_REVOKED) is None

    def test_unexpected_error_enters_failed(self, scheduler, oauth_client, authenticated):
        oauth_client.queue(RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            scheduler.refresh_now()

        assert scheduler.state == AuthState.FAILED
        assert scheduler.is_refreshing is False


class TestSingleFlight:
    """Concurrent callers share one refresh."""

    def test_concurrent_callers_share_one_refresh(self, scheduler, oauth_client, authenticated):
        oauth_client.delay = 0.2
        results = []
        errors = []

        def call():
            try:
                results.append(scheduler.refresh_now())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=call) for _ in range(5)]
        for t in threads:
            t.start()
            time.sleep(0.01)
        for t in threads:
            t.join()

        assert errors == []
        assert oauth_client.refresh_calls == 1
        assert {r.access_token for r in results} == {"ya29.refreshed-1"}

    def test_waiters_see_failure(self, scheduler, oauth_client, authenticated):
        oauth_client.delay = 0.2
        oauth_client.queue(NonRetryableRefreshError("invalid_grant"))
        errors = []

        def call():
            try:
                scheduler.refresh_now()
            except AuthenticationRequiredError as e:
                errors.append(e)

        threads = [threading.Thread(target=call) for _ in range(3)]
        for t in threads:
            t.start()
            time.sleep(0.01)
        for t in threads:
            t.join()

        assert len(errors) == 3
        assert oauth_client.refresh_calls == 1


class TestTimer:
    """Preemptive refresh decisions and the background thread."""

    def test_no_refresh_outside_buffer(self, scheduler, oauth_client, authenticated):
        assert scheduler.check_and_refresh() is False
        assert oauth_client.refresh_calls == 0

    def test_refresh_inside_buffer(self, scheduler, oauth_client, clock, authenticated):
        clock.advance(3600 - 300)

        assert scheduler.check_and_refresh() is True
        assert oauth_client.refresh_calls == 1

    def test_tick_swallows_authentication_failures(self, scheduler, oauth_client, clock, authenticated):
        clock.advance(3600)
        oauth_client.queue(NonRetryableRefreshError("invalid_grant"))

        assert scheduler.check_and_refresh() is False
        assert scheduler.state == AuthState.REVOKED

    def test_unauthenticated_never_needs_refresh(self, scheduler):
        scheduler.initialize()
        assert scheduler.needs_refresh() is False

    def test_background_thread_refreshes(self, store, oauth_client, audit_log, clock, make_record):
        store.save(make_record(expires_in=60))
        scheduler = RefreshScheduler(
            store,
            oauth_client,
            audit_log,
            refresh_interval=0.05,
            preemptive_buffer=600,
            max_retries=1,
            retry_base_delay=0,
            clock=clock,
        )
        scheduler.initialize()

        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while oauth_client.refresh_calls == 0 and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            scheduler.stop()

        assert oauth_client.refresh_calls >= 1
        assert scheduler.state == AuthState.AUTHENTICATED

    def test_start_is_idempotent_and_stop_joins(self, scheduler):
        scheduler.start()
        thread = scheduler._thread
        scheduler.start()

        assert scheduler._thread is thread
        scheduler.stop()
        assert not thread.is_alive()


class TestGoogleTokenEndpoint:
    """The scheduler driving the real Google client over a canned transport."""

    @pytest.fixture
    def google_scheduler(self, store, audit_log, clock, sleeps, make_record):
        client = GoogleOAuthClient(
            {
                "installed": {
                    "client_id": "test-client-id.apps.googleusercontent.com",
                    "client_secret": "rotated-away",
                    "token_uri": "https://oauth2.googleapis.com/token",
                }
            },
            timeout=5.0,
        )
        scheduler = RefreshScheduler(
            store,
            client,
            audit_log,
            refresh_interval=1800,
            preemptive_buffer=600,
            max_retries=3,
            retry_base_delay=1.0,
            clock=clock,
            sleep=sleeps.append,
        )
        store.save(make_record())
        scheduler.initialize()
        return scheduler, client

    def install_transport(self, client, status, payload):
        calls = []

        def _transport(url, method="GET", body=None, headers=None, **kwargs):
            calls.append(url)
            response = MagicMock()
            response.status = status
            response.headers = {}
            response.data = json.dumps(payload).encode("utf-8")
            return response

        client._request = lambda: _transport
        return calls

    def test_invalid_client_keeps_tokens(self, google_scheduler, store, audit_log):
        scheduler, client = google_scheduler
        self.install_transport(client, 401, {"error": "invalid_client", "error_description": "Unauthorized"})

        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()

        assert scheduler.state == AuthState.FAILED
        assert store.exists()
        assert audit_log.last(AuditEvent.TOKEN_REVOKED) is None

    def test_exhausted_retries_make_one_request_per_attempt(self, google_scheduler, sleeps):
        scheduler, client = google_scheduler
        calls = self.install_transport(client, 503, {"error": "temporarily_unavailable"})

        with pytest.raises(AuthenticationRequiredError):
            scheduler.refresh_now()

        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]
        assert scheduler.state == AuthState.FAILED
