"""
Append-only audit log for credential events.

Each event is one JSON object per line. Entries are flushed and fsynced
before record() returns, so an operation that reports success has a
durable audit trail.
"""

import json
import logging
import os
from collections.abc import Iterator
from threading import Lock
from typing import Any, Protocol, runtime_checkable

from auth.credential_types import AuditEntry, AuditEvent, utcnow
from core.context import get_audit_session_id
from core.utils import PRIVATE_FILE_MODE, ensure_private_directory

logger = logging.getLogger(__name__)


@runtime_checkable
class AuditLogProtocol(Protocol):
    """Protocol for audit sinks injected into credential components."""

    def record(self, event: AuditEvent, metadata: dict[str, Any] | None = None) -> AuditEntry:
        """Append an event and return the entry that was written."""
        ...


def build_entry(event: AuditEvent, metadata: dict[str, Any] | None = None) -> AuditEntry:
    return AuditEntry(
        timestamp=utcnow(),
        event=AuditEvent(event),
        metadata=dict(metadata or {}),
        session_id=get_audit_session_id(),
    )


class AuditLog:
    """JSON-lines audit log on the local filesystem."""

    def __init__(self, path: str):
        self.path = path
        self._lock = Lock()
        logger.debug(f"AuditLog initialized with path: {path}")

    def record(self, event: AuditEvent, metadata: dict[str, Any] | None = None) -> AuditEntry:
        """
        Append an event to the log.

        Raises:
            OSError: If the entry could not be made durable. Callers must not
                report success for the triggering operation in that case.
        """
        entry = build_entry(event, metadata)
        line = json.dumps(entry.to_dict(), sort_keys=True, default=str) + "\n"

        with self._lock:
            ensure_private_directory(os.path.dirname(os.path.abspath(self.path)))
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, PRIVATE_FILE_MODE)
            with os.fdopen(fd, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

        logger.debug(f"Audit event recorded: {entry.event.value}")
        return entry

    def read_entries(self) -> Iterator[dict[str, Any]]:
        """Yield the raw entries in the order they were written, skipping unreadable lines."""
        if not os.path.exists(self.path):
            return

        with open(self.path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed audit line {line_number} in {self.path}")
