"""Tests for core file and hashing helpers."""

import os
import stat
from unittest.mock import patch

import pytest

from core.context import get_audit_session_id, set_audit_session_id
from core.utils import atomic_write_bytes, check_directory_writable, ensure_private_directory, hash_token_id


class TestHashTokenId:
    """Tests for hash_token_id."""

    def test_hash_is_stable_and_short(self):
        assert hash_token_id("ya29.abc") == hash_token_id("ya29.abc")
        assert len(hash_token_id("ya29.abc")) == 16

    def test_hash_does_not_contain_token(self):
        assert "ya29" not in hash_token_id("ya29.secret-value")

    def test_empty_token_has_no_id(self):
        assert hash_token_id(None) is None
        assert hash_token_id("") is None


class TestAtomicWriteBytes:
    """Tests for atomic_write_bytes."""

    def test_writes_content_with_private_mode(self, temp_dir):
        path = os.path.join(temp_dir, "nested", "tokens.json")

        atomic_write_bytes(path, b"payload")

        with open(path, "rb") as f:
            assert f.read() == b"payload"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_replaces_existing_file(self, temp_dir):
        path = os.path.join(temp_dir, "tokens.json")
        atomic_write_bytes(path, b"old")
        atomic_write_bytes(path, b"new")

        with open(path, "rb") as f:
            assert f.read() == b"new"

    def test_failed_replace_leaves_original_and_no_temp_files(self, temp_dir):
        path = os.path.join(temp_dir, "tokens.json")
        atomic_write_bytes(path, b"original")

        with patch("core.utils.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                atomic_write_bytes(path, b"replacement")

        with open(path, "rb") as f:
            assert f.read() == b"original"
        assert os.listdir(temp_dir) == ["tokens.json"]


class TestDirectories:
    """Tests for directory helpers."""

    def test_ensure_private_directory_creates_parents(self, temp_dir):
        directory = os.path.join(temp_dir, "a", "b")
        assert ensure_private_directory(directory) == directory
        assert os.path.isdir(directory)

    def test_check_directory_writable_passes_and_cleans_up(self, temp_dir):
        check_directory_writable(temp_dir)
        assert os.listdir(temp_dir) == []

    def test_check_directory_writable_raises_permission_error(self, temp_dir):
        with patch("builtins.open", side_effect=OSError("read-only file system")):
            with pytest.raises(PermissionError, match="Cannot write"):
                check_directory_writable(temp_dir)


class TestAuditSessionId:
    """Tests for the audit session context."""

    def test_defaults_to_process_id(self):
        set_audit_session_id(None)
        first = get_audit_session_id()
        assert first
        assert get_audit_session_id() == first

    def test_explicit_id_overrides_default(self):
        set_audit_session_id("cli-1234")
        try:
            assert get_audit_session_id() == "cli-1234"
        finally:
            set_audit_session_id(None)
