"""
Timestamped snapshots of the encrypted credential file.

A backup is a byte-exact copy of the live token file, named
<stem>.backup.<ISO-8601 basic UTC timestamp>.json. Backups are taken right
before a rotation or migration and pruned to the retention count only after
a successful rotation.
"""

import json
import logging
import os
import re
import shutil
from datetime import datetime, timezone

from auth.credential_types import Backup, utcnow
from core.errors import BackupError
from core.utils import atomic_write_bytes, ensure_private_directory

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S.%fZ"


class BackupStore:
    """Manages backup files for one token file."""

    def __init__(self, backup_dir: str, token_path: str):
        self.backup_dir = backup_dir
        self.stem = os.path.splitext(os.path.basename(token_path))[0]
        self._name_pattern = re.compile(rf"^{re.escape(self.stem)}\.backup\.(\d{{8}}T\d{{6}}\.\d{{6}}Z)(?:-(\d+))?\.json$")

    def _backup_path(self, timestamp: datetime) -> str:
        base = f"{self.stem}.backup.{timestamp.strftime(TIMESTAMP_FORMAT)}"
        path = os.path.join(self.backup_dir, f"{base}.json")
        counter = 1
        while os.path.exists(path):
            path = os.path.join(self.backup_dir, f"{base}-{counter}.json")
            counter += 1
        return path

    @staticmethod
    def _source_key_version(raw: bytes) -> int | None:
        try:
            version = json.loads(raw).get("keyVersion")
        except (ValueError, AttributeError):
            return None
        return version if isinstance(version, int) else None

    def snapshot(self, source_path: str) -> Backup:
        """
        Copy the current token file to a new timestamped backup.

        Raises:
            BackupError: If the source is missing or the copy cannot be written.
        """
        try:
            with open(source_path, "rb") as f:
                raw = f.read()
        except FileNotFoundError as e:
            raise BackupError(f"Cannot back up {source_path}: file does not exist") from e
        except OSError as e:
            raise BackupError(f"Cannot read {source_path} for backup: {e}") from e

        timestamp = utcnow()
        path = self._backup_path(timestamp)
        try:
            atomic_write_bytes(path, raw)
        except OSError as e:
            raise BackupError(f"Failed to write backup {path}: {e}") from e

        backup = Backup(timestamp=timestamp, source_key_version=self._source_key_version(raw), path=path)
        logger.info(f"Created backup {path} (key version {backup.source_key_version})")
        return backup

    def list_backups(self) -> list[Backup]:
        """List backups, newest first."""
        if not os.path.isdir(self.backup_dir):
            return []

        found: list[tuple[str, int, Backup]] = []
        for filename in os.listdir(self.backup_dir):
            match = self._name_pattern.match(filename)
            if not match:
                continue
            stamp, counter = match.group(1), int(match.group(2) or 0)
            timestamp = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
            path = os.path.join(self.backup_dir, filename)
            try:
                with open(path, "rb") as f:
                    source_version = self._source_key_version(f.read())
            except OSError as e:
                logger.warning(f"Could not read backup {path}: {e}")
                source_version = None
            found.append((stamp, counter, Backup(timestamp=timestamp, source_key_version=source_version, path=path)))

        found.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [backup for _, _, backup in found]

    def latest(self) -> Backup | None:
        backups = self.list_backups()
        return backups[0] if backups else None

    def read(self, backup: Backup) -> bytes:
        try:
            with open(backup.path, "rb") as f:
                return f.read()
        except OSError as e:
            raise BackupError(f"Cannot read backup {backup.path}: {e}") from e

    def find(self, path: str) -> Backup:
        """Resolve a backup by path or file name."""
        wanted = os.path.abspath(path if os.path.isabs(path) else os.path.join(self.backup_dir, os.path.basename(path)))
        for backup in self.list_backups():
            if os.path.abspath(backup.path) == wanted:
                return backup
        raise BackupError(f"Backup not found: {path}")

    def prune(self, retention: int) -> list[str]:
        """Delete the oldest backups beyond the retention count and return their paths."""
        removed = []
        for backup in self.list_backups()[retention:]:
            try:
                os.remove(backup.path)
                removed.append(backup.path)
                logger.info(f"Pruned old backup {backup.path}")
            except OSError as e:
                logger.error(f"Error pruning backup {backup.path}: {e}")
        return removed

    def has_free_space(self, required_bytes: int) -> bool:
        """Check free disk space in the backup directory."""
        ensure_private_directory(self.backup_dir)
        return shutil.disk_usage(self.backup_dir).free >= required_bytes
