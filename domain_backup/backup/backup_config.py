"""Backup engine configuration constants."""

import os

# Default backup location (hidden directory)
DEFAULT_BACKUP_DIR = os.path.join(
    os.path.expanduser("~"), ".domain_backup", "backups"
)

# Seconds between persist checks
DEFAULT_PERSIST_INTERVAL = 30

# Worker wake-up period; keeps shutdown latency low
TICK_INTERVAL = 0.01

# Archive naming: backup-<rule_prefix><timestamp>.zip
ARCHIVE_PREFIX = "backup-"
ARCHIVE_SUFFIX = ".zip"
DATETIME_FORMAT = "%Y-%m-%d_%H-%M-%S"
DATETIME_PATTERN = r"\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}"

# Marker file present while a persist cycle is writing
LOCK_FILE_NAME = "running.lock"

# Permissions: owner-only on the backup directory
BACKUP_DIR_MODE = 0o700
