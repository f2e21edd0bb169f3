"""Advisory "save in progress" marker for the backup directory.

The marker is a zero-byte file that exists only while a persist cycle is
writing. It is an operational signal for outside tooling and crash
detection. It is not a mutex: creation truncates rather than failing if
the file already exists.
"""

import logging
import os
from contextlib import contextmanager
from pathlib import Path

from domain_backup.backup.backup_config import LOCK_FILE_NAME

logger = logging.getLogger(__name__)


def lock_path(directory: str) -> Path:
    return Path(directory) / LOCK_FILE_NAME


def is_locked(directory: str) -> bool:
    return lock_path(directory).exists()


def clear_stale_lock(directory: str) -> bool:
    """Remove a marker left behind by an interrupted persist.

    Returns True if one was found.
    """
    path = lock_path(directory)
    if not path.exists():
        return False
    logger.warning("Found %s: previous persist did not complete", path)
    try:
        path.unlink()
    except OSError as exc:
        logger.error("Could not remove stale lock marker %s: %s", path, exc)
    return True


def create_lock_marker(directory: str) -> Path:
    """Create (or truncate) the marker. Raises OSError on failure."""
    path = lock_path(directory)
    with open(path, "wb"):
        pass
    return path


def remove_lock_marker(path: Path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Could not remove lock marker %s: %s", path, exc)


@contextmanager
def lock_marker(directory: str):
    """Hold the marker for the duration of the ``with`` block.

    Raises OSError if the marker cannot be created.
    """
    path = create_lock_marker(directory)
    try:
        yield path
    finally:
        remove_lock_marker(path)
