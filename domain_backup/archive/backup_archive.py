"""Zip-backed archive container for backup snapshots.

An archive is treated as an opaque sequence of named byte entries. It can
be opened in three modes:

    READ     - read existing entries
    ADD      - append entries to an existing archive (created if absent)
    REWRITE  - truncate and write a fresh archive
"""

import json
import logging
import zipfile
from pathlib import Path

logger = logging.getLogger(__name__)

READ = "r"
ADD = "a"
REWRITE = "w"

_MODES = (READ, ADD, REWRITE)


class ArchiveError(Exception):
    """Raised when an archive cannot be opened, read or written."""


class BackupArchive:
    """Handle on one open backup archive.

    Usage::

        with open_archive("/backups/backup-daily-2025-02-01_14-30-00.zip", REWRITE) as zf:
            zf.write_json("settings.json", {"max_users": 10})
    """

    def __init__(self, path: str, mode: str = READ):
        if mode not in _MODES:
            raise ValueError(f"Unknown archive mode: {mode!r}")
        self.path = Path(path)
        self.mode = mode
        try:
            self._zip = zipfile.ZipFile(
                str(self.path), mode=mode, compression=zipfile.ZIP_DEFLATED,
            )
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Could not open archive {self.path}: {exc}") from exc

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"BackupArchive({str(self.path)!r}, mode={self.mode!r})"

    @property
    def closed(self) -> bool:
        return self._zip is None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def names(self) -> list[str]:
        self._check_open()
        return self._zip.namelist()

    def has_entry(self, name: str) -> bool:
        return name in self.names()

    def read(self, name: str) -> bytes | None:
        """Return the entry's bytes, or None if the archive lacks it."""
        self._check_open()
        if self.mode == REWRITE:
            raise ArchiveError(f"Archive {self.path} is open for rewrite")
        try:
            return self._zip.read(name)
        except KeyError:
            return None
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Could not read {name} from {self.path}: {exc}") from exc

    def read_text(self, name: str, encoding: str = "utf-8") -> str | None:
        data = self.read(name)
        return data.decode(encoding) if data is not None else None

    def read_json(self, name: str):
        text = self.read_text(name)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ArchiveError(f"Entry {name} in {self.path} is not valid JSON: {exc}") from exc

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, name: str, data: bytes | str):
        self._check_open()
        if self.mode == READ:
            raise ArchiveError(f"Archive {self.path} is open read-only")
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            self._zip.writestr(name, data)
        except (OSError, ValueError) as exc:
            raise ArchiveError(f"Could not write {name} to {self.path}: {exc}") from exc

    def write_text(self, name: str, text: str, encoding: str = "utf-8"):
        self.write(name, text.encode(encoding))

    def write_json(self, name: str, obj):
        self.write(name, json.dumps(obj, indent=2, sort_keys=True))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self):
        if self._zip is None:
            return
        zf, self._zip = self._zip, None
        try:
            zf.close()
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Could not finalize archive {self.path}: {exc}") from exc

    def _check_open(self):
        if self._zip is None:
            raise ArchiveError(f"Archive {self.path} is closed")


def open_archive(path: str, mode: str = READ) -> BackupArchive:
    """Open ``path`` in the given mode. Raises ArchiveError on failure."""
    archive = BackupArchive(path, mode)
    logger.debug("Opened archive %s (mode=%s)", path, mode)
    return archive
