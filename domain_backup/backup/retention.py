"""Retention: roll old archive versions for a backup rule."""

import logging
import os

from domain_backup.backup.archive_names import matching_archives

logger = logging.getLogger(__name__)


def prune(directory: str, rule) -> list[str]:
    """Delete the oldest archives of ``rule`` beyond ``rule.max_versions``.

    Returns the filenames that were removed. A failed deletion is logged
    and the remaining excess files are still attempted.
    """
    if rule.max_versions <= 0:
        logger.debug(
            "Rolling backups for rule %s. Max versions less than 1 [%d]. "
            "No need to roll backups...", rule.name, rule.max_versions,
        )
        return []

    if not os.path.isdir(directory):
        return []

    logger.debug("Rolling old backup versions for rule %s...", rule.name)
    archives = matching_archives(directory, rule.filename_prefix)
    excess = len(archives) - rule.max_versions

    removed = []
    for filename, _ in archives[:max(excess, 0)]:
        try:
            os.remove(os.path.join(directory, filename))
        except OSError as exc:
            logger.error("Failed to remove old backup %s: %s", filename, exc)
            continue
        logger.info("Removed old backup: %s", filename)
        removed.append(filename)

    return removed
