"""Archive filename convention and the time index built on it.

Backup archives are named::

    backup-<rule_prefix><YYYY-MM-DD_HH-MM-SS>.zip

e.g. ``backup-daily-2025-02-01_14-30-00.zip``. The timestamp is fixed
width and zero padded, so sorting names lexically sorts them
chronologically. Files that start with a rule's prefix but carry a
malformed timestamp are not considered part of that rule.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from domain_backup.backup.backup_config import (
    ARCHIVE_PREFIX,
    ARCHIVE_SUFFIX,
    DATETIME_FORMAT,
    DATETIME_PATTERN,
)

logger = logging.getLogger(__name__)

_ANY_ARCHIVE_RE = re.compile(
    re.escape(ARCHIVE_PREFIX) + r"(.*-)(" + DATETIME_PATTERN + r")"
    + re.escape(ARCHIVE_SUFFIX)
)


@dataclass
class BackupInfo:
    """One archive on disk."""
    filename: str
    path: str
    rule_prefix: str
    created_at: datetime
    size_bytes: int

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "path": self.path,
            "rule_prefix": self.rule_prefix,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
        }


def rule_prefix(name: str) -> str:
    """Daily Snapshot -> daily_snapshot-"""
    return name.replace(" ", "_").lower() + "-"


def archive_filename(prefix: str, when: datetime) -> str:
    return f"{ARCHIVE_PREFIX}{prefix}{when.strftime(DATETIME_FORMAT)}{ARCHIVE_SUFFIX}"


def _archive_re(prefix: str) -> re.Pattern:
    return re.compile(
        re.escape(ARCHIVE_PREFIX + prefix) + r"(" + DATETIME_PATTERN + r")"
        + re.escape(ARCHIVE_SUFFIX)
    )


def parse_archive_timestamp(filename: str, prefix: str | None = None) -> datetime | None:
    """Return the timestamp embedded in ``filename``.

    Returns None when the name does not match the archive pattern (for
    ``prefix`` if given) or the timestamp is not a real calendar time.
    """
    if prefix is None:
        match = _ANY_ARCHIVE_RE.fullmatch(filename)
        stamp = match.group(2) if match else None
    else:
        match = _archive_re(prefix).fullmatch(filename)
        stamp = match.group(1) if match else None
    if stamp is None:
        return None
    try:
        return datetime.strptime(stamp, DATETIME_FORMAT)
    except ValueError:
        logger.debug("Skipping backup with invalid timestamp: %s", filename)
        return None


def _list_files(directory: str) -> list[str]:
    try:
        entries = os.listdir(directory)
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("Could not list backup directory %s: %s", directory, exc)
        return []

    files = []
    for entry in sorted(entries):
        full = os.path.join(directory, entry)
        if os.path.islink(full) or not os.path.isfile(full):
            continue
        files.append(entry)
    return files


def matching_archives(directory: str, prefix: str) -> list[tuple[str, datetime]]:
    """All archives belonging to ``prefix``, sorted oldest first."""
    pattern = ARCHIVE_PREFIX + prefix
    results = []
    for name in _list_files(directory):
        if not name.startswith(pattern) or not name.endswith(ARCHIVE_SUFFIX):
            continue
        created_at = parse_archive_timestamp(name, prefix)
        if created_at is None:
            logger.debug("NO match: %s", name)
            continue
        results.append((name, created_at))
    return results


def most_recent_archive(directory: str, prefix: str) -> tuple[str, datetime] | None:
    """Return (filename, timestamp) of the newest archive for ``prefix``."""
    best = None
    for name, created_at in matching_archives(directory, prefix):
        # Equal timestamps: the later name in sort order wins
        if best is None or created_at >= best[1]:
            best = (name, created_at)
    return best


def most_recent_backup_seconds(directory: str, prefix: str) -> int:
    """Epoch seconds of the newest archive for ``prefix``, or 0 if none."""
    found = most_recent_archive(directory, prefix)
    if found is None:
        return 0
    return int(found[1].timestamp())


def list_backups(directory: str, prefix: str | None = None) -> list[BackupInfo]:
    """Every well-formed archive in ``directory``, newest first."""
    backups = []
    for name in _list_files(directory):
        if prefix is not None:
            created_at = parse_archive_timestamp(name, prefix)
            owner = prefix
        else:
            match = _ANY_ARCHIVE_RE.fullmatch(name)
            created_at = parse_archive_timestamp(name)
            owner = match.group(1) if match else ""
        if created_at is None:
            continue
        full = os.path.join(directory, name)
        try:
            size = os.path.getsize(full)
        except OSError:
            continue
        backups.append(BackupInfo(
            filename=name,
            path=str(Path(full)),
            rule_prefix=owner,
            created_at=created_at,
            size_bytes=size,
        ))
    backups.sort(key=lambda b: (b.created_at, b.filename), reverse=True)
    return backups


def format_seconds(seconds: int) -> str:
    """90061 -> '1d 1h 1m 1s'"""
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)
