# core/context.py
import contextvars
import uuid

# Identifies the process (or CLI invocation) that produced an audit entry.
_PROCESS_SESSION_ID = uuid.uuid4().hex

# Context variable to hold an explicit audit session ID for the current call chain.
_audit_session_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("audit_session_id", default=None)


def get_audit_session_id() -> str:
    """
    Retrieve the audit session ID for the current context.
    Falls back to the per-process session ID when none was set.
    """
    return _audit_session_id.get() or _PROCESS_SESSION_ID


def set_audit_session_id(session_id: str | None) -> None:
    """
    Set or clear the audit session ID for the current context.
    This is called by the CLI when an operator command starts.
    """
    _audit_session_id.set(session_id)
