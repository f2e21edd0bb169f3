"""Tests for the backup engine: persist cycles, restore, export and the worker.

Covers:
- Rule scheduling (due / not due / forced)
- Retention after each write
- Lock marker discipline and stale-marker detection
- Contributor isolation (one failure does not stop the others)
- Contributor call order for load, create and consolidate
- Startup load: filename order, unreadable archives, idempotence
- Create -> load round trip
- Consolidated export
- Worker thread start / request / shutdown with final forced persist
"""

import os
import stat
import threading
import time
from datetime import datetime, timedelta

import pytest

from domain_backup.archive.backup_archive import READ, REWRITE, open_archive
from domain_backup.archive.contributor import BackupContributor, BackupHandler
from domain_backup.backup.archive_names import archive_filename, matching_archives
from domain_backup.backup.backup_config import LOCK_FILE_NAME
from domain_backup.backup.backup_manager import BackupManager
from domain_backup.backup.lock_marker import is_locked, lock_marker
from domain_backup.contributors.json_state import JsonStateContributor


T0 = datetime(2025, 3, 1, 12, 0, 0)

DAILY = {"Name": "Daily", "backupInterval": 86400, "maxBackupVersions": 3}
HOURLY = {"Name": "Hourly", "backupInterval": 3600, "maxBackupVersions": 0}


class RecordingContributor(BackupContributor):
    """Keeps a dict of state; records every call it receives."""

    def __init__(self, name="recorder", state=None):
        self.name = name
        self.state = dict(state or {})
        self.calls = []
        self.loaded_from = []

    def create_backup(self, archive):
        self.calls.append("create")
        archive.write_json(f"{self.name}.json", self.state)

    def load_backup(self, archive):
        self.calls.append("load")
        self.loaded_from.append(archive.path.name)
        data = archive.read_json(f"{self.name}.json")
        if data is not None:
            self.state = data

    def consolidate_backup(self, archive):
        self.calls.append("consolidate")
        archive.write_json(f"{self.name}-export.json", {"exported": True})


class SlowContributor(BackupContributor):
    """Takes ``delay`` seconds per write; counts writes that overlap."""

    name = "slow"

    def __init__(self, delay):
        self.delay = delay
        self.active = 0
        self.overlaps = 0
        self.threads = []
        self._lock = threading.Lock()

    def load_backup(self, archive):
        pass

    def create_backup(self, archive):
        with self._lock:
            self.active += 1
            if self.active > 1:
                self.overlaps += 1
            self.threads.append(threading.current_thread().name)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1


def daily_files(directory):
    return [n for n, _ in matching_archives(str(directory), "daily-")]


def make_archive(directory, prefix, when, entries=None):
    path = directory / archive_filename(prefix, when)
    with open_archive(str(path), REWRITE) as zf:
        for name, obj in (entries or {}).items():
            zf.write_json(name, obj)
    return path


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def make_manager(backup_dir):
    managers = []

    def _make(rules=None, **kwargs):
        kwargs.setdefault("persist_interval", 3600)
        mgr = BackupManager(
            backup_directory=str(backup_dir),
            settings={"backups": rules if rules is not None else [DAILY]},
            **kwargs,
        )
        managers.append(mgr)
        return mgr

    yield _make

    for mgr in managers:
        if mgr.is_running:
            mgr.shutdown(timeout=5)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestSetup:
    def test_creates_directory(self, make_manager, backup_dir):
        make_manager()
        assert backup_dir.is_dir()

    def test_stale_lock_detected_and_removed(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        (backup_dir / LOCK_FILE_NAME).write_bytes(b"")

        mgr = make_manager()

        assert mgr.stale_lock_found is True
        assert not (backup_dir / LOCK_FILE_NAME).exists()

    def test_rules_rehydrated(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0)
        make_archive(backup_dir, "daily-", T0 + timedelta(hours=5))

        mgr = make_manager()
        assert mgr.rules[0].last_backup_seconds == int((T0 + timedelta(hours=5)).timestamp())

    def test_register_after_start_rejected(self, make_manager):
        mgr = make_manager()
        mgr.start()
        with pytest.raises(RuntimeError):
            mgr.register(RecordingContributor())

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_new_directory_restricted(self, make_manager, backup_dir):
        make_manager()
        assert stat.S_IMODE(os.stat(backup_dir).st_mode) == 0o700

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_existing_directory_mode_preserved(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        os.chmod(backup_dir, 0o755)

        mgr = make_manager()
        mgr.persist(now=T0)

        assert stat.S_IMODE(os.stat(backup_dir).st_mode) == 0o755


# ---------------------------------------------------------------------------
# Contributor ordering
# ---------------------------------------------------------------------------

class TestContributorOrder:
    NAMES = ("first", "second", "third")

    def test_operations_follow_registration_order(self, make_manager, tmp_path):
        order = []
        mgr = make_manager()
        for name in self.NAMES:
            mgr.register(BackupHandler(
                name=name,
                load=lambda a, n=name: order.append(("load", n)),
                create=lambda a, n=name: order.append(("create", n)),
                consolidate=lambda a, n=name: order.append(("consolidate", n)),
            ))

        [name] = mgr.persist(now=T0)
        mgr.load()
        mgr.consolidate(name, destination_dir=str(tmp_path / "export"))

        assert order == [(op, n) for op in ("create", "load", "consolidate")
                         for n in self.NAMES]

    def test_order_holds_across_archives(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0)
        make_archive(backup_dir, "daily-", T0 + timedelta(days=1))

        order = []
        mgr = make_manager()
        for name in reversed(self.NAMES):
            mgr.register(BackupHandler(
                name=name,
                load=lambda a, n=name: order.append(n),
                create=lambda a: None,
            ))
        mgr.load()

        assert order == list(reversed(self.NAMES)) * 2


# ---------------------------------------------------------------------------
# Persist cycle
# ---------------------------------------------------------------------------

class TestPersist:
    def test_first_cycle_writes_then_waits(self, make_manager, backup_dir):
        mgr = make_manager()
        mgr.register(RecordingContributor(state={"v": 1}))

        written = mgr.persist(now=T0)
        assert written == ["backup-daily-2025-03-01_12-00-00.zip"]
        assert mgr.rules[0].last_backup_seconds == int(T0.timestamp())

        assert mgr.persist(now=T0 + timedelta(seconds=5)) == []
        assert daily_files(backup_dir) == written

    def test_fires_again_after_interval(self, make_manager, backup_dir):
        mgr = make_manager()
        mgr.persist(now=T0)
        written = mgr.persist(now=T0 + timedelta(days=1, seconds=1))
        assert written == [archive_filename("daily-", T0 + timedelta(days=1, seconds=1))]
        assert len(daily_files(backup_dir)) == 2

    def test_archive_contains_contributor_entries(self, make_manager, backup_dir):
        mgr = make_manager()
        mgr.register(RecordingContributor("world", {"entities": 12}))
        mgr.register(RecordingContributor("acl", {"admins": ["root"]}))

        [name] = mgr.persist(now=T0)

        with open_archive(str(backup_dir / name), READ) as zf:
            assert zf.read_json("world.json") == {"entities": 12}
            assert zf.read_json("acl.json") == {"admins": ["root"]}

    def test_each_rule_independent(self, make_manager, backup_dir):
        mgr = make_manager([DAILY, HOURLY])
        mgr.persist(now=T0)

        written = mgr.persist(now=T0 + timedelta(hours=2))
        assert written == [archive_filename("hourly-", T0 + timedelta(hours=2))]

    def test_retention_applied(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        old = [make_archive(backup_dir, "daily-", T0 - timedelta(days=10 - i)).name
               for i in range(5)]

        mgr = make_manager()
        [new] = mgr.persist(now=T0)

        assert daily_files(backup_dir) == sorted(old[-2:] + [new])

    def test_unlimited_rule_keeps_everything(self, make_manager, backup_dir):
        mgr = make_manager([HOURLY])
        for i in range(5):
            mgr.persist(now=T0 + timedelta(hours=2 * i))
        assert len(matching_archives(str(backup_dir), "hourly-")) == 5

    def test_malformed_archive_left_alone(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        (backup_dir / "backup-daily-not-a-date.zip").write_bytes(b"junk")
        for i in range(3):
            make_archive(backup_dir, "daily-", T0 - timedelta(days=3 - i))

        mgr = make_manager()
        assert mgr.rules[0].last_backup_seconds == int((T0 - timedelta(days=1)).timestamp())

        mgr.persist(now=T0 + timedelta(days=1))

        assert (backup_dir / "backup-daily-not-a-date.zip").exists()
        assert len(daily_files(backup_dir)) == 3

    def test_zero_interval_rule_only_forced(self, make_manager, backup_dir):
        manual = {"Name": "Manual", "backupInterval": 0, "maxBackupVersions": 2}
        mgr = make_manager([manual])

        assert mgr.persist(now=T0) == []
        assert mgr.persist(now=T0, force=True) == [archive_filename("manual-", T0)]

    def test_force_ignores_interval(self, make_manager, backup_dir):
        mgr = make_manager([DAILY, HOURLY])
        mgr.persist(now=T0)
        written = mgr.persist(now=T0 + timedelta(seconds=5), force=True)
        assert len(written) == 2

    def test_lock_marker_held_during_write(self, make_manager, backup_dir):
        seen = []
        mgr = make_manager()
        mgr.register(BackupHandler(
            name="watcher",
            load=lambda a: None,
            create=lambda a: seen.append(is_locked(str(backup_dir))),
        ))

        mgr.persist(now=T0)

        assert seen == [True]
        assert not (backup_dir / LOCK_FILE_NAME).exists()

    def test_lock_marker_failure_skips_cycle(self, make_manager, backup_dir, monkeypatch):
        mgr = make_manager()

        def refuse(directory):
            raise PermissionError("read-only volume")

        monkeypatch.setattr(
            "domain_backup.backup.lock_marker.create_lock_marker", refuse,
        )
        assert mgr.persist(now=T0) == []
        assert daily_files(backup_dir) == []

    def test_lock_marker_context(self, backup_dir):
        backup_dir.mkdir(parents=True)
        with lock_marker(str(backup_dir)) as path:
            assert path == backup_dir / LOCK_FILE_NAME
            assert path.exists()
        assert not is_locked(str(backup_dir))

    def test_lock_marker_removed_on_error(self, backup_dir):
        backup_dir.mkdir(parents=True)
        with pytest.raises(RuntimeError):
            with lock_marker(str(backup_dir)):
                raise RuntimeError("write failed")
        assert not is_locked(str(backup_dir))

    def test_lock_marker_missing_directory_raises(self, tmp_path):
        with pytest.raises(OSError):
            with lock_marker(str(tmp_path / "absent")):
                pass

    def test_failing_contributor_does_not_stop_others(self, make_manager, backup_dir):
        def explode(archive):
            raise RuntimeError("boom")

        good = RecordingContributor("good", {"ok": True})
        mgr = make_manager()
        mgr.register(BackupHandler(name="bad", load=explode, create=explode))
        mgr.register(good)

        [name] = mgr.persist(now=T0)

        assert good.calls == ["create"]
        with open_archive(str(backup_dir / name), READ) as zf:
            assert zf.read_json("good.json") == {"ok": True}

    def test_unwritable_archive_abandons_rule(self, make_manager, backup_dir):
        mgr = make_manager([DAILY, HOURLY])
        # A directory squatting on the archive name makes it unopenable
        (backup_dir / archive_filename("daily-", T0)).mkdir()

        written = mgr.persist(now=T0)

        assert written == [archive_filename("hourly-", T0)]
        assert mgr.rules[0].last_backup_seconds == 0

    def test_low_disk_space_skips_write(self, make_manager, backup_dir):
        mgr = make_manager(min_free_bytes=10 ** 18)
        assert mgr.persist(now=T0) == []
        assert daily_files(backup_dir) == []

    def test_events_emitted(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        for i in range(3):
            make_archive(backup_dir, "daily-", T0 - timedelta(days=5 - i))
        events = []
        mgr = make_manager(on_event=lambda kind, data: events.append((kind, data)))

        mgr.persist(now=T0)

        kinds = [k for k, _ in events]
        assert kinds == ["backup_created", "backup_pruned", "persist_complete"]
        assert events[0][1]["rule"] == "Daily"
        assert len(events[1][1]["removed"]) == 1

    def test_event_callback_errors_swallowed(self, make_manager):
        def broken(kind, data):
            raise ValueError("listener bug")

        mgr = make_manager(on_event=broken)
        assert len(mgr.persist(now=T0)) == 1


# ---------------------------------------------------------------------------
# Startup load
# ---------------------------------------------------------------------------

class TestLoad:
    def test_round_trip(self, make_manager, backup_dir):
        source = {"zones": ["lobby", "arena"], "max_avatars": 40}
        mgr = make_manager()
        mgr.register(JsonStateContributor("domain", lambda: source, lambda s: None))
        mgr.persist(now=T0)

        restored = {}
        fresh = make_manager()
        fresh.register(JsonStateContributor("domain", dict, restored.update))
        assert fresh.load() == 1
        assert restored == source

    def test_filename_order(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0 + timedelta(days=1), {"recorder.json": {"v": 2}})
        make_archive(backup_dir, "daily-", T0, {"recorder.json": {"v": 1}})

        rec = RecordingContributor()
        mgr = make_manager()
        mgr.register(rec)
        mgr.load()

        assert rec.loaded_from == sorted(rec.loaded_from)
        assert rec.state == {"v": 2}

    def test_every_contributor_sees_every_archive(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0)
        make_archive(backup_dir, "weekly-", T0)

        a, b = RecordingContributor("a"), RecordingContributor("b")
        mgr = make_manager()
        mgr.register(a)
        mgr.register(b)
        mgr.load()

        assert a.calls == ["load", "load"]
        assert b.calls == ["load", "load"]

    def test_unreadable_archive_skipped(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        (backup_dir / archive_filename("daily-", T0)).write_bytes(b"not a zip")
        make_archive(backup_dir, "daily-", T0 + timedelta(days=1), {"recorder.json": {"v": 9}})

        rec = RecordingContributor()
        mgr = make_manager()
        mgr.register(rec)

        assert mgr.load() == 1
        assert rec.state == {"v": 9}

    def test_missing_entries_tolerated(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0, {"other.json": {}})

        rec = RecordingContributor(state={"untouched": True})
        mgr = make_manager()
        mgr.register(rec)
        mgr.load()

        assert rec.state == {"untouched": True}

    def test_load_is_idempotent(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0, {"recorder.json": {"v": 1}})
        make_archive(backup_dir, "daily-", T0 + timedelta(days=1), {"recorder.json": {"v": 2}})

        rec = RecordingContributor()
        mgr = make_manager()
        mgr.register(rec)

        mgr.load()
        once = dict(rec.state)
        mgr.load()
        assert rec.state == once

    def test_empty_directory(self, make_manager):
        assert make_manager().load() == 0


# ---------------------------------------------------------------------------
# Consolidated export
# ---------------------------------------------------------------------------

class TestConsolidate:
    def test_creates_standalone_copy(self, make_manager, backup_dir, tmp_path):
        rec = RecordingContributor(state={"v": 1})
        mgr = make_manager()
        mgr.register(rec)
        [name] = mgr.persist(now=T0)

        export_dir = tmp_path / "export"
        path = mgr.consolidate(name, destination_dir=str(export_dir))

        assert path == str(export_dir / name)
        with open_archive(path, READ) as zf:
            assert zf.read_json("recorder.json") == {"v": 1}
            assert zf.read_json("recorder-export.json") == {"exported": True}
        with open_archive(str(backup_dir / name), READ) as zf:
            assert not zf.has_entry("recorder-export.json")
        assert rec.calls == ["create", "consolidate"]

    def test_missing_backup(self, make_manager, tmp_path):
        mgr = make_manager()
        assert mgr.consolidate("backup-daily-2025-01-01_00-00-00.zip",
                               destination_dir=str(tmp_path)) is None

    @pytest.mark.parametrize("bad", ["", "..", "../etc/passwd", "sub/backup.zip"])
    def test_rejects_paths(self, make_manager, tmp_path, bad):
        assert make_manager().consolidate(bad, destination_dir=str(tmp_path)) is None

    def test_corrupt_backup(self, make_manager, backup_dir, tmp_path):
        mgr = make_manager()
        name = archive_filename("daily-", T0)
        (backup_dir / name).write_bytes(b"garbage")
        assert mgr.consolidate(name, destination_dir=str(tmp_path / "out")) is None


# ---------------------------------------------------------------------------
# Scheduling and the worker thread
# ---------------------------------------------------------------------------

def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestScheduling:
    def test_tick_respects_persist_interval(self, make_manager, backup_dir):
        mgr = make_manager(persist_interval=30)
        start = mgr._last_check

        assert mgr.tick(now_monotonic=start + 10) is False
        assert daily_files(backup_dir) == []

        assert mgr.tick(now_monotonic=start + 31) is True
        assert len(daily_files(backup_dir)) == 1

        assert mgr.tick(now_monotonic=start + 40) is False

    def test_submit_inline_when_stopped(self, make_manager):
        mgr = make_manager()
        assert mgr.submit(lambda x: x * 2, 21).result() == 42

    def test_submit_propagates_errors(self, make_manager):
        def fail():
            raise KeyError("missing")

        future = make_manager().submit(fail)
        with pytest.raises(KeyError):
            future.result()

    def test_request_persist_inline_when_stopped(self, make_manager, backup_dir):
        mgr = make_manager()
        mgr.request_persist()
        assert len(daily_files(backup_dir)) == 1


class TestWorker:
    def test_start_loads_existing(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", T0, {"recorder.json": {"v": 7}})

        rec = RecordingContributor()
        mgr = make_manager()
        mgr.register(rec)
        mgr.start()

        assert mgr.is_running
        assert rec.state == {"v": 7}

    def test_periodic_persist(self, make_manager, backup_dir):
        mgr = make_manager(persist_interval=0.05)
        mgr.start()
        assert wait_for(lambda: len(daily_files(backup_dir)) >= 1)

    def test_request_persist_runs_on_worker(self, make_manager, backup_dir):
        mgr = make_manager([{"Name": "Manual", "backupInterval": 0}])
        mgr.start()
        mgr.request_persist()
        assert wait_for(lambda: len(matching_archives(str(backup_dir), "manual-")) == 1)

    def test_submit_runs_on_worker(self, make_manager):
        mgr = make_manager()
        mgr.start()
        name = mgr.submit(lambda: threading.current_thread().name).result(timeout=5)
        assert name == "backup-persist"

    def test_shutdown_forces_final_backup(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        recent = datetime.now() - timedelta(minutes=1)
        make_archive(backup_dir, "daily-", recent)
        make_archive(backup_dir, "hourly-", recent)

        mgr = make_manager([DAILY, HOURLY])
        mgr.start()
        mgr.shutdown(timeout=5)

        assert not mgr.is_running
        assert len(daily_files(backup_dir)) == 2
        assert len(matching_archives(str(backup_dir), "hourly-")) == 2
        assert not (backup_dir / LOCK_FILE_NAME).exists()

    def test_shutdown_without_start_still_persists(self, make_manager, backup_dir):
        backup_dir.mkdir(parents=True)
        make_archive(backup_dir, "daily-", datetime.now() - timedelta(minutes=1))

        mgr = make_manager()
        mgr.shutdown()

        assert len(daily_files(backup_dir)) == 2

    def test_shutdown_timeout_leaves_final_cycle_alone(self, make_manager, backup_dir):
        slow = SlowContributor(delay=0.5)
        mgr = make_manager([{"Name": "Manual", "backupInterval": 0}])
        mgr.register(slow)
        mgr.start()

        mgr.shutdown(timeout=0.05)
        assert mgr.is_running

        # Must neither run inline nor start a second cycle
        mgr.request_persist()
        job = mgr.submit(lambda: threading.current_thread().name)

        mgr.shutdown()

        assert not mgr.is_running
        assert job.result(timeout=5) == "backup-persist"
        assert slow.overlaps == 0
        assert slow.threads == ["backup-persist"]
        assert len(matching_archives(str(backup_dir), "manual-")) == 1

    def test_shutdown_is_idempotent(self, make_manager, backup_dir):
        mgr = make_manager([HOURLY])
        mgr.shutdown()
        mgr.shutdown()
        assert len(matching_archives(str(backup_dir), "hourly-")) == 1

    def test_status(self, make_manager, backup_dir):
        mgr = make_manager()
        mgr.register(RecordingContributor("world"))
        mgr.persist(now=T0)

        status = mgr.get_status()

        assert status["running"] is False
        assert status["backup_directory"] == str(backup_dir)
        assert status["persist_in_progress"] is False
        assert status["contributors"] == ["world"]
        assert status["rules"][0]["name"] == "Daily"
        assert status["rules"][0]["last_backup"] == T0.isoformat()
        assert status["disk"]["total"] > 0
