"""Backup rules: one per configured backup class.

Rules are rebuilt from configuration at every startup. The time of each
rule's last backup is not stored anywhere; it is recovered from the
newest matching archive in the backup directory.
"""

import logging
import time
from dataclasses import dataclass

from domain_backup.backup.archive_names import (
    format_seconds,
    most_recent_backup_seconds,
    rule_prefix,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupRule:
    name: str
    interval_seconds: int
    filename_prefix: str
    max_versions: int
    last_backup_seconds: int = 0

    def seconds_since_last_backup(self, now_seconds: int) -> int:
        return now_seconds - self.last_backup_seconds

    def is_due(self, now_seconds: int) -> bool:
        """True when the interval has elapsed. Rules with no interval never fall due."""
        if self.interval_seconds <= 0:
            return False
        return self.seconds_since_last_backup(now_seconds) > self.interval_seconds

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "filename_prefix": self.filename_prefix,
            "max_versions": self.max_versions,
            "last_backup_seconds": self.last_backup_seconds,
        }


def coerce_int(value) -> int:
    """Accept 3600, 3600.0 or "3600"; anything else becomes 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def parse_rules(settings: dict, backup_directory: str) -> list[BackupRule]:
    """Build the rule set from ``settings["backups"]``.

    Malformed values fall back to 0 rather than failing startup.
    """
    entries = (settings or {}).get("backups")
    if not isinstance(entries, list):
        logger.info("BACKUP RULES: NONE")
        return []

    logger.info("BACKUP RULES:")
    rules = []
    now = int(time.time())
    for entry in entries:
        if not isinstance(entry, dict):
            logger.warning("Ignoring malformed backup rule: %r", entry)
            continue

        name = entry.get("name", entry.get("Name", ""))
        if not isinstance(name, str):
            name = str(name)
        interval = coerce_int(entry.get("backupInterval"))
        count = coerce_int(entry.get("maxBackupVersions"))
        prefix = rule_prefix(name)

        rule = BackupRule(
            name=name,
            interval_seconds=interval,
            filename_prefix=prefix,
            max_versions=count,
        )
        rule.last_backup_seconds = most_recent_backup_seconds(backup_directory, prefix)

        logger.info("    Name: %s", name)
        logger.info("        format: %s", prefix)
        logger.info("        interval: %d", interval)
        logger.info("        count: %d", count)
        if rule.last_backup_seconds > 0:
            logger.info("        lastBackup: %s ago",
                        format_seconds(rule.seconds_since_last_backup(now)))
        else:
            logger.info("        lastBackup: NEVER")

        rules.append(rule)

    return rules
