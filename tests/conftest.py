"""Shared pytest fixtures for gws-mcp-credentials tests."""

import base64
import json
import os
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from auth.audit_log import build_entry
from auth.backup_store import BackupStore
from auth.config import MIN_KDF_ITERATIONS
from auth.credential_store import CredentialStore
from auth.credential_types import AuditEvent, TokenRecord
from auth.facade import AuthFacade
from auth.key_rotation import KeyRotator
from auth.migration import TokenMigrator
from auth.refresh_scheduler import RefreshScheduler
from core.errors import ServiceConfigurationError

TEST_SECRETS = {
    1: "test-secret-v1-0123456789abcdef",
    2: "test-secret-v2-fedcba9876543210",
    3: "test-secret-v3-aaaabbbbccccdddd",
    4: "test-secret-v4-eeeeffff00001111",
    5: "test-secret-v5-2222333344445555",
    6: "test-secret-v6-6666777788889999",
    7: "test-secret-v7-aaaa0000bbbb1111",
}
TEST_ITERATIONS = MIN_KDF_ITERATIONS
# base64 of 32 bytes, the shape legacy files were keyed with
LEGACY_SECRET = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="


class InMemoryAuditLog:
    """AuditLogProtocol implementation that keeps entries in a list."""

    def __init__(self):
        self.entries = []
        self._lock = threading.Lock()

    def record(self, event, metadata=None):
        entry = build_entry(event, metadata)
        with self._lock:
            self.entries.append(entry)
        return entry

    def events(self) -> list[AuditEvent]:
        return [entry.event for entry in self.entries]

    def last(self, event: AuditEvent):
        matching = [entry for entry in self.entries if entry.event == event]
        return matching[-1] if matching else None


class ManualClock:
    """Clock callable whose time only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeOAuthClient:
    """
    OAuthClient double.

    Queued outcomes (TokenRecord or exception) are consumed one per refresh
    call; once the queue is empty each call issues a fresh one-hour token.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.outcomes = []
        self.refresh_calls = 0
        self.refresh_tokens_seen = []
        self.delay = 0.0
        self._lock = threading.Lock()

    def queue(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)

    def issue(self, access_token: str, refresh_token: str = "") -> TokenRecord:
        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            scope="https://www.googleapis.com/auth/drive",
            token_type="Bearer",
            expires_at=self.clock() + timedelta(hours=1),
        )

    def refresh(self, refresh_token: str) -> TokenRecord:
        with self._lock:
            self.refresh_calls += 1
            call = self.refresh_calls
            self.refresh_tokens_seen.append(refresh_token)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if self.delay:
            time.sleep(self.delay)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or self.issue(f"ya29.refreshed-{call}")

    def exchange(self, code: str) -> TokenRecord:
        return self.issue(f"ya29.exchanged-{code}", refresh_token="1//exchanged-refresh")


def legacy_content(record: TokenRecord, secret: str = LEGACY_SECRET) -> bytes:
    """Encrypt a record the way legacy files were written: hex iv:tag:ciphertext."""
    key = base64.b64decode(secret)
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, json.dumps(record.to_dict()).encode("utf-8"), None)
    ciphertext, tag = sealed[:-16], sealed[-16:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}".encode()


def secret_provider(version: int) -> str:
    try:
        return TEST_SECRETS[version]
    except KeyError:
        raise ServiceConfigurationError(f"no secret for key version {version}") from None


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def env_override(monkeypatch):
    """Helper to override environment variables."""

    def _override(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, value)

    return _override


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def oauth_client(clock):
    return FakeOAuthClient(clock)


@pytest.fixture
def make_record(clock):
    """Factory for token records expiring relative to the manual clock."""

    def _make(expires_in: float = 3600, access_token: str = "ya29.initial", refresh_token: str = "1//refresh"):
        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            scope="https://www.googleapis.com/auth/drive https://www.googleapis.com/auth/documents",
            token_type="Bearer",
            expires_at=clock() + timedelta(seconds=expires_in),
        )

    return _make


@pytest.fixture
def token_path(tmp_path):
    return str(tmp_path / "creds" / "tokens.json")


@pytest.fixture
def store(token_path, audit_log):
    return CredentialStore(token_path, audit_log, secret_provider=secret_provider, iterations=TEST_ITERATIONS)


@pytest.fixture
def backups(tmp_path, token_path):
    return BackupStore(str(tmp_path / "creds" / "backups"), token_path)


@pytest.fixture
def rotator(store, backups, audit_log):
    return KeyRotator(store, backups, audit_log, retention=5, iterations=TEST_ITERATIONS)


@pytest.fixture
def migrator(store, backups, audit_log):
    return TokenMigrator(store, backups, audit_log, legacy_secret_provider=lambda: LEGACY_SECRET)


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def scheduler(store, oauth_client, audit_log, clock, sleeps):
    return RefreshScheduler(
        store,
        oauth_client,
        audit_log,
        refresh_interval=1800,
        preemptive_buffer=600,
        max_retries=3,
        retry_base_delay=1.0,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def facade(store, scheduler):
    return AuthFacade(store, scheduler)
