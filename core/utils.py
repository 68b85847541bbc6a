import hashlib
import logging
import os
import tempfile

logger = logging.getLogger(__name__)

PRIVATE_FILE_MODE = 0o600
PRIVATE_DIR_MODE = 0o700


def hash_token_id(token: str | None) -> str | None:
    """Return a stable, non-reversible identifier for a token, safe to log or audit."""
    if not token:
        return None
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def ensure_private_directory(directory: str) -> str:
    """Create a directory (and parents) readable only by the current user."""
    if not os.path.exists(directory):
        os.makedirs(directory, mode=PRIVATE_DIR_MODE, exist_ok=True)
        logger.info(f"Created credentials directory: {directory}")
    return directory


def atomic_write_bytes(path: str, data: bytes) -> None:
    """
    Write data to path with no partial-write window.

    The data goes to a temp file in the same directory, is flushed and fsynced,
    then renamed over the target with os.replace.
    """
    directory = os.path.dirname(os.path.abspath(path))
    ensure_private_directory(directory)

    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, PRIVATE_FILE_MODE)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise

    _fsync_directory(directory)


def _fsync_directory(directory: str) -> None:
    """Persist a rename on filesystems that need the directory entry synced."""
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass  # not supported on every platform
    finally:
        os.close(dir_fd)


def check_directory_writable(directory: str) -> None:
    """
    Check that the service can create and write to a directory.

    Raises:
        PermissionError: If the directory cannot be created or written to
    """
    try:
        ensure_private_directory(directory)
        test_file = os.path.join(directory, ".permission_test")
        with open(test_file, "w") as f:
            f.write("test")
        os.remove(test_file)
    except OSError as e:
        raise PermissionError(f"Cannot write to directory '{os.path.abspath(directory)}': {e}") from e
