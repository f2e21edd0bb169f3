"""Contributor that stores one JSON document.

Useful for small pieces of server state (settings, permissions, place
names) owned by code that can hand over a JSON-serializable snapshot and
accept one back.
"""

import logging
from typing import Callable

from domain_backup.archive.backup_archive import BackupArchive
from domain_backup.archive.contributor import BackupContributor

logger = logging.getLogger(__name__)


class JsonStateContributor(BackupContributor):
    """Stores ``get_state()`` as ``<name>.json`` and hands it to ``set_state`` on load."""

    def __init__(self, name: str, get_state: Callable[[], object],
                 set_state: Callable[[object], None]):
        self.name = name
        self.get_state = get_state
        self.set_state = set_state

    @property
    def entry_name(self) -> str:
        return f"{self.name}.json"

    def create_backup(self, archive: BackupArchive):
        archive.write_json(self.entry_name, self.get_state())

    def load_backup(self, archive: BackupArchive):
        state = archive.read_json(self.entry_name)
        if state is None:
            logger.debug("%s has no %s entry", archive.path.name, self.entry_name)
            return
        self.set_state(state)
