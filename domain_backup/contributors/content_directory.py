"""Contributor that snapshots a directory of server content files.

Every regular file under ``directory`` is stored as
``<name>/<relative/path>`` inside the archive. Loading makes the directory match
the archive: stored files are written back and files the archive does not
list are removed.
"""

import logging
import os
from pathlib import Path

from domain_backup.archive.backup_archive import BackupArchive
from domain_backup.archive.contributor import BackupContributor

logger = logging.getLogger(__name__)


class ContentDirectoryContributor(BackupContributor):

    def __init__(self, directory: str, name: str = "content"):
        self.directory = Path(directory)
        self.name = name

    def _entry_prefix(self) -> str:
        return f"{self.name}/"

    def create_backup(self, archive: BackupArchive):
        if not self.directory.is_dir():
            logger.debug("Content directory %s does not exist, nothing to back up",
                         self.directory)
            return

        count = 0
        for root, _dirs, files in os.walk(self.directory):
            for fname in sorted(files):
                full = Path(root) / fname
                if full.is_symlink():
                    continue
                rel = full.relative_to(self.directory).as_posix()
                try:
                    data = full.read_bytes()
                except OSError as exc:
                    logger.error("Could not read %s: %s", full, exc)
                    continue
                archive.write(self._entry_prefix() + rel, data)
                count += 1
        logger.debug("Stored %d content file(s) from %s", count, self.directory)

    def load_backup(self, archive: BackupArchive):
        prefix = self._entry_prefix()
        entries = [n for n in archive.names() if n.startswith(prefix) and not n.endswith("/")]
        if not entries:
            return

        root = self.directory.resolve()
        kept = set()
        restored = 0
        for entry in entries:
            rel = entry[len(prefix):]
            dest = (root / rel).resolve()
            # Refuse entries that would escape the content directory
            if root != dest and root not in dest.parents:
                logger.warning("Skipping unsafe archive entry %s", entry)
                continue
            kept.add(dest)
            data = archive.read(entry)
            if data is None:
                continue
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(data)
            except OSError as exc:
                logger.error("Could not restore %s: %s", dest, exc)
                continue
            restored += 1

        if not kept:
            return
        removed = self._remove_untracked(root, kept)
        logger.info("Restored %d content file(s) into %s from %s (%d removed)",
                    restored, self.directory, archive.path.name, removed)

    @staticmethod
    def _remove_untracked(root: Path, kept: set) -> int:
        """Delete regular files under ``root`` that the archive does not list."""
        removed = 0
        for dirpath, _dirs, files in os.walk(root):
            for fname in files:
                full = Path(dirpath) / fname
                if full.is_symlink() or full in kept:
                    continue
                try:
                    full.unlink()
                except OSError as exc:
                    logger.error("Could not remove %s: %s", full, exc)
                    continue
                removed += 1
        return removed
