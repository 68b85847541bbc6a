"""Tests for the JSON-lines audit log."""

import json
import os
import stat
import threading

import pytest

from auth.audit_log import AuditLog, AuditLogProtocol
from auth.credential_types import AuditEvent
from core.context import set_audit_session_id


@pytest.fixture
def log_path(temp_dir):
    return os.path.join(temp_dir, "logs", "audit.log")


class TestAuditLog:
    """Tests for AuditLog."""

    def test_satisfies_protocol(self, log_path):
        assert isinstance(AuditLog(log_path), AuditLogProtocol)

    def test_record_appends_json_line(self, log_path):
        log = AuditLog(log_path)
        log.record(AuditEvent.TOKEN_REFRESHED, {"tokenId": "abc"})
        log.record(AuditEvent.KEY_ROTATED, {"newVersion": 2})

        with open(log_path, encoding="utf-8") as f:
            lines = [json.loads(line) for line in f]

        assert [line["event"] for line in lines] == ["TOKEN_REFRESHED", "KEY_ROTATED"]
        assert lines[0]["metadata"] == {"tokenId": "abc"}
        assert set(lines[0]) == {"timestamp", "event", "metadata", "sessionId"}

    def test_file_is_private(self, log_path):
        AuditLog(log_path).record(AuditEvent.TOKEN_ACQUIRED)

        assert stat.S_IMODE(os.stat(log_path).st_mode) == 0o600

    def test_entry_carries_session_id(self, log_path):
        set_audit_session_id("cli-test")
        try:
            entry = AuditLog(log_path).record(AuditEvent.TOKEN_DELETED)
        finally:
            set_audit_session_id(None)

        assert entry.session_id == "cli-test"

    def test_read_entries_skips_malformed_lines(self, log_path):
        log = AuditLog(log_path)
        log.record(AuditEvent.TOKEN_ACQUIRED)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write("{truncated\n\n")
        log.record(AuditEvent.TOKEN_REVOKED)

        assert [e["event"] for e in log.read_entries()] == ["TOKEN_ACQUIRED", "TOKEN_REVOKED"]

    def test_read_entries_without_file(self, log_path):
        assert list(AuditLog(log_path).read_entries()) == []

    def test_concurrent_records_are_not_interleaved(self, log_path):
        log = AuditLog(log_path)

        def write_many():
            for i in range(25):
                log.record(AuditEvent.TOKEN_REFRESHED, {"i": i})

        threads = [threading.Thread(target=write_many) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(list(log.read_entries())) == 100
