"""Configuration file loading.

The config is a single JSON document (``config/config.json`` by default)::

    {
        "backup": {
            "directory": "~/.domain_backup/backups",
            "persist_interval": 30,
            "min_free_mb": 0,
            "content_directory": null
        },
        "backups": [
            {"Name": "Daily", "backupInterval": 86400, "maxBackupVersions": 7}
        ],
        "dashboard": {"host": "127.0.0.1", "port": 5000}
    }
"""

import json
import logging
import os
from pathlib import Path

from domain_backup.backup.backup_config import DEFAULT_BACKUP_DIR, DEFAULT_PERSIST_INTERVAL
from domain_backup.backup.backup_rules import coerce_int

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = str(PROJECT_ROOT / "config" / "config.json")


def load_settings(config_path: str = None) -> dict:
    """Read the JSON config. A missing file yields an empty config."""
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if not path.is_file():
        logger.warning("Config file not found: %s (using defaults)", path)
        return {}
    try:
        with open(path) as f:
            config = json.load(f)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file {path}: {exc}") from exc
    except OSError as exc:
        raise ValueError(f"Could not read config file {path}: {exc}") from exc
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return config


def _resolve_path(path_str: str) -> str:
    return str(Path(os.path.expanduser(os.path.expandvars(path_str))).resolve())


def backup_directory(config: dict) -> str:
    directory = config.get("backup", {}).get("directory")
    return _resolve_path(directory) if directory else DEFAULT_BACKUP_DIR


def content_directory(config: dict) -> str | None:
    directory = config.get("backup", {}).get("content_directory")
    return _resolve_path(directory) if directory else None


def persist_interval(config: dict) -> int:
    value = coerce_int(config.get("backup", {}).get("persist_interval", DEFAULT_PERSIST_INTERVAL))
    return value if value > 0 else DEFAULT_PERSIST_INTERVAL


def min_free_bytes(config: dict) -> int:
    return max(0, coerce_int(config.get("backup", {}).get("min_free_mb", 0))) * 1024 * 1024
