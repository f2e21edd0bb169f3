"""Backup orchestration.

Owns the backup rules and the registered contributors, and runs the
persist loop on a single background worker:

    start()     load every existing archive, then begin polling
    tick()      one scheduling step (for hosts that drive the loop)
    shutdown()  stop polling and run one forced final persist

Every rule check, archive write and contributor call happens on the
worker thread. Other threads talk to it through ``request_persist()``
and ``submit()``.
"""

import logging
import os
import queue
import shutil
import tempfile
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from pathlib import Path
from typing import Callable

import psutil

from domain_backup.archive.backup_archive import ADD, READ, REWRITE, ArchiveError, open_archive
from domain_backup.archive.contributor import BackupContributor
from domain_backup.backup.archive_names import (
    BackupInfo,
    archive_filename,
    list_backups,
)
from domain_backup.backup.backup_config import (
    ARCHIVE_PREFIX,
    ARCHIVE_SUFFIX,
    BACKUP_DIR_MODE,
    DEFAULT_BACKUP_DIR,
    DEFAULT_PERSIST_INTERVAL,
    TICK_INTERVAL,
)
from domain_backup.backup.backup_rules import BackupRule, parse_rules
from domain_backup.backup.lock_marker import clear_stale_lock, is_locked, lock_marker
from domain_backup.backup.retention import prune

logger = logging.getLogger(__name__)


class BackupManager:
    """Scheduled backup engine.

    Usage::

        mgr = BackupManager("/srv/domain/backups", settings=config)
        mgr.register(entity_contributor)
        mgr.start()
        ...
        mgr.shutdown()

    Parameters
    ----------
    backup_directory:
        Where archives and the lock marker live. Created if absent.
    settings:
        Parsed configuration; rules are read from ``settings["backups"]``.
    persist_interval:
        Seconds between persist checks, independent of rule intervals.
    tick_interval:
        Worker sleep between checks. Only affects shutdown latency.
    min_free_bytes:
        Skip writing an archive when the backup volume has less free space
        than this. 0 disables the check.
    on_event:
        Optional ``callback(event_type, data)`` for engine events.
    """

    def __init__(
        self,
        backup_directory: str = None,
        settings: dict | None = None,
        persist_interval: float = DEFAULT_PERSIST_INTERVAL,
        tick_interval: float = TICK_INTERVAL,
        min_free_bytes: int = 0,
        on_event: Callable[[str, dict], None] | None = None,
    ):
        self.backup_directory = Path(backup_directory or DEFAULT_BACKUP_DIR)
        self.persist_interval = persist_interval
        self.tick_interval = tick_interval
        self.min_free_bytes = min_free_bytes
        self.on_event = on_event

        self._ensure_directory()
        self.stale_lock_found = clear_stale_lock(str(self.backup_directory))
        self.rules: list[BackupRule] = parse_rules(settings or {}, str(self.backup_directory))

        self._contributors: list[BackupContributor] = []
        self._last_check = time.monotonic()
        self._stop_event = threading.Event()
        self._persist_requested = threading.Event()
        self._jobs: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._finished = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _ensure_directory(self):
        # Only a directory created here gets the restrictive mode
        if self.backup_directory.is_dir():
            return
        try:
            self.backup_directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Could not create backup directory %s: %s",
                         self.backup_directory, exc)
            return
        try:
            os.chmod(str(self.backup_directory), BACKUP_DIR_MODE)
        except OSError:
            logger.debug("Could not set backup directory permissions")

    def register(self, contributor: BackupContributor):
        """Add a contributor. Must be called before ``start()``."""
        if self.is_running:
            raise RuntimeError("Contributors must be registered before start()")
        self._contributors.append(contributor)
        logger.debug("Registered backup contributor %s", contributor.name)

    @property
    def contributors(self) -> list[BackupContributor]:
        return list(self._contributors)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Feed every existing archive, in filename order, to every contributor.

        Returns the number of archives that could be opened.
        """
        if not self.backup_directory.is_dir():
            return 0

        paths = sorted(
            p for p in self.backup_directory.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}")
            if p.is_file() and not p.is_symlink()
        )

        loaded = 0
        for path in paths:
            try:
                archive = open_archive(str(path), READ)
            except ArchiveError as exc:
                logger.error("Could not open backup archive: %s", exc)
                continue

            self._run_contributors("load_backup", archive)
            try:
                archive.close()
            except ArchiveError as exc:
                logger.error("%s", exc)
            loaded += 1

        logger.info("Loaded %d backup archive(s) from %s", loaded, self.backup_directory)
        return loaded

    # ------------------------------------------------------------------
    # Persist cycle
    # ------------------------------------------------------------------

    def persist(self, now: datetime | None = None, force: bool = False) -> list[str]:
        """Run one backup cycle guarded by the lock marker.

        Returns the names of the archives written.
        """
        self._ensure_directory()
        try:
            with lock_marker(str(self.backup_directory)):
                written = self.backup(now=now, force=force)
        except OSError as exc:
            logger.error("Could not create lock marker in %s: %s",
                         self.backup_directory, exc)
            return []

        self._emit("persist_complete", {"written": written, "forced": force})
        return written

    def backup(self, now: datetime | None = None, force: bool = False) -> list[str]:
        """Write an archive for every rule that is due (or every rule if ``force``)."""
        now = now or datetime.now()
        now_seconds = int(now.timestamp())

        written = []
        for rule in self.rules:
            elapsed = rule.seconds_since_last_backup(now_seconds)
            logger.debug(
                "Checking [%s] - Time since last backup [%d] compared to "
                "backup interval [%d]...", rule.name, elapsed, rule.interval_seconds,
            )
            if not force and not rule.is_due(now_seconds):
                logger.debug("Backup not needed for this rule [%s]...", rule.name)
                continue

            try:
                filename = self._backup_rule(rule, now)
            except Exception:
                logger.exception("Backup for rule [%s] failed", rule.name)
                continue
            if filename:
                written.append(filename)

        return written

    def _backup_rule(self, rule: BackupRule, now: datetime) -> str | None:
        if not self._has_free_space():
            return None

        filename = archive_filename(rule.filename_prefix, now)
        path = self.backup_directory / filename
        try:
            archive = open_archive(str(path), REWRITE)
        except ArchiveError as exc:
            logger.error("Could not open backup archive: %s", exc)
            return None

        self._run_contributors("create_backup", archive)

        try:
            archive.close()
        except ArchiveError as exc:
            logger.error("%s", exc)
            self._discard(path)
            return None

        logger.info("Created backup: %s", filename)
        rule.last_backup_seconds = int(now.timestamp())
        self._emit("backup_created", {"rule": rule.name, "filename": filename})

        removed = prune(str(self.backup_directory), rule)
        if removed:
            self._emit("backup_pruned", {"rule": rule.name, "removed": removed})
        return filename

    def _run_contributors(self, operation: str, archive):
        for contributor in self._contributors:
            try:
                getattr(contributor, operation)(archive)
            except Exception:
                logger.exception("Contributor %s failed during %s",
                                 getattr(contributor, "name", contributor), operation)

    def _has_free_space(self) -> bool:
        if self.min_free_bytes <= 0:
            return True
        try:
            usage = psutil.disk_usage(str(self.backup_directory))
        except OSError as exc:
            logger.warning("Could not read disk usage for %s: %s",
                           self.backup_directory, exc)
            return True
        if usage.free < self.min_free_bytes:
            logger.error(
                "Not enough free space in %s (%d bytes free, %d required); "
                "skipping backup", self.backup_directory, usage.free, self.min_free_bytes,
            )
            return False
        return True

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Could not remove incomplete archive %s: %s", path, exc)

    def _emit(self, event_type: str, data: dict):
        if self.on_event is None:
            return
        try:
            self.on_event(event_type, data)
        except Exception:
            logger.exception("Backup event callback failed for %s", event_type)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def consolidate(self, filename: str, destination_dir: str | None = None) -> str | None:
        """Produce a standalone copy of an existing archive.

        The archive is copied to ``destination_dir`` (the system temp
        directory by default) and every contributor gets a chance to
        complete the copy. Returns the copy's path, or None on failure.
        """
        if not filename or os.path.basename(filename) != filename or filename in (".", ".."):
            logger.error("Invalid backup name: %r", filename)
            return None

        source = self.backup_directory / filename
        if not source.is_file():
            logger.error("Backup not found: %s", source)
            return None

        # Append mode would happily tack a new zip onto a corrupt file
        try:
            open_archive(str(source), READ).close()
        except ArchiveError as exc:
            logger.critical("Could not open backup archive: %s", exc)
            return None

        dest = Path(destination_dir or tempfile.gettempdir()) / filename
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(str(source), str(dest))
        except OSError as exc:
            logger.critical("Failed to create full backup of %s: %s", filename, exc)
            return None

        try:
            archive = open_archive(str(dest), ADD)
        except ArchiveError as exc:
            logger.critical("Could not open backup archive: %s", exc)
            return None

        self._run_contributors("consolidate_backup", archive)
        try:
            archive.close()
        except ArchiveError as exc:
            logger.critical("%s", exc)
            return None

        logger.info("Consolidated %s -> %s", filename, dest)
        return str(dest)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def tick(self, now_monotonic: float | None = None) -> bool:
        """Run queued jobs, then persist if the check interval has elapsed.

        Returns True when a persist cycle ran.
        """
        self._run_jobs()

        now = time.monotonic() if now_monotonic is None else now_monotonic
        if self._persist_requested.is_set():
            self._persist_requested.clear()
            self._last_check = now
            self.persist(force=True)
            return True

        if now - self._last_check > self.persist_interval:
            self._last_check = now
            self.persist()
            return True
        return False

    def process(self) -> bool:
        """Sleep one tick interval, then tick. Returns False once stopping."""
        if self._stop_event.wait(self.tick_interval):
            return False
        try:
            self.tick()
        except Exception:
            logger.exception("Error in backup persist loop")
        return not self._stop_event.is_set()

    def request_persist(self):
        """Ask for a forced persist at the next tick."""
        if self.is_running:
            self._persist_requested.set()
        else:
            self.persist(force=True)

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run ``fn`` on the worker thread and return a Future for its result.

        Runs inline when the worker is not running.
        """
        future = Future()
        if self.is_running and threading.current_thread() is not self._thread:
            self._jobs.put((future, fn, args, kwargs))
        else:
            self._execute(future, fn, args, kwargs)
        return future

    def _run_jobs(self):
        while True:
            try:
                future, fn, args, kwargs = self._jobs.get_nowait()
            except queue.Empty:
                return
            self._execute(future, fn, args, kwargs)

    @staticmethod
    def _execute(future: Future, fn, args, kwargs):
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Restore prior content and start the persist worker."""
        if self.is_running:
            logger.warning("Backup manager already running")
            return

        self.load()
        self._stop_event.clear()
        self._finished = False
        self._last_check = time.monotonic()
        self._thread = threading.Thread(
            target=self._run,
            daemon=False,
            name="backup-persist",
        )
        self._thread.start()
        logger.info("Backup manager started (%d rule(s), %d contributor(s))",
                    len(self.rules), len(self._contributors))

    def _run(self):
        try:
            while self.process():
                pass
        finally:
            self._run_jobs()
            self.about_to_finish()
            self._run_jobs()

    def about_to_finish(self):
        logger.info("Persist thread about to finish...")
        self.persist(force=True)

    def shutdown(self, timeout: float | None = None):
        """Stop the worker; the final forced persist runs exactly once.

        A cycle in progress is never interrupted. If ``timeout`` expires
        first the worker keeps running and ``shutdown()`` may be called
        again to wait for it.
        """
        if self._thread is None:
            if not self._finished:
                self._finished = True
                self.about_to_finish()
                logger.info("Backup manager stopped.")
            return

        self._finished = True
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Backup persist thread still writing its final backup "
                           "after %s s", timeout)
            return
        self._thread = None
        self._run_jobs()
        logger.info("Backup manager stopped.")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_backups(self, rule_prefix: str | None = None) -> list[BackupInfo]:
        return list_backups(str(self.backup_directory), rule_prefix)

    def get_status(self) -> dict:
        rules = []
        for rule in self.rules:
            info = rule.to_dict()
            info["last_backup"] = (
                datetime.fromtimestamp(rule.last_backup_seconds).isoformat()
                if rule.last_backup_seconds > 0 else None
            )
            rules.append(info)

        disk = None
        try:
            usage = psutil.disk_usage(str(self.backup_directory))
            disk = {
                "total": usage.total,
                "used": usage.used,
                "free": usage.free,
                "percent": usage.percent,
            }
        except OSError:
            logger.debug("Disk usage unavailable for %s", self.backup_directory)

        return {
            "running": self.is_running,
            "backup_directory": str(self.backup_directory),
            "persist_interval": self.persist_interval,
            "persist_in_progress": is_locked(str(self.backup_directory)),
            "contributors": [c.name for c in self._contributors],
            "rules": rules,
            "disk": disk,
        }
