"""Contract between the backup engine and the subsystems that own content.

Every registered contributor takes part in three operations, each handed
an open :class:`BackupArchive`:

    load_backup        - restore in-memory state from an existing archive
    create_backup      - write current state into a fresh archive
    consolidate_backup - finish a standalone copy of an existing archive

The engine opens the archive, calls the operation on each contributor in
registration order, then closes it. Contributors must not keep the
archive handle after their callback returns.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from domain_backup.archive.backup_archive import BackupArchive


class BackupContributor(ABC):
    """Base class for content subsystems that participate in backups."""

    name: str

    @abstractmethod
    def load_backup(self, archive: BackupArchive):
        """Restore state from ``archive``.

        Archives written before this contributor existed will lack its
        entries; that is not an error.
        """

    @abstractmethod
    def create_backup(self, archive: BackupArchive):
        """Write current state into ``archive`` as one or more entries."""

    def consolidate_backup(self, archive: BackupArchive):
        """Called on a copied archive when exporting a standalone backup.

        The copy already carries whatever ``create_backup`` wrote, so the
        default does nothing.
        """


@dataclass
class BackupHandler(BackupContributor):
    """Contributor assembled from plain callables."""
    name: str
    load: Callable[[BackupArchive], None]
    create: Callable[[BackupArchive], None]
    consolidate: Callable[[BackupArchive], None] | None = None

    def load_backup(self, archive: BackupArchive):
        self.load(archive)

    def create_backup(self, archive: BackupArchive):
        self.create(archive)

    def consolidate_backup(self, archive: BackupArchive):
        if self.consolidate is not None:
            self.consolidate(archive)
