"""Tests for session_lock.py and session.py — real lock files in tmp_path."""

import json
import os
import subprocess
import sys

import pytest

from reviw.registry import CleanupRegistry
from reviw.session import open_session
from reviw.session_lock import AlreadyLocked, SessionLockManager, lock_name_for, pid_alive


def _dead_pid() -> int:
    """Pid of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _write_holder(manager: SessionLockManager, path: str, pid, raw: str = None) -> None:
    manager.lock_dir.mkdir(parents=True, exist_ok=True)
    content = raw if raw is not None else json.dumps(
        {"pid": pid, "acquired_at": "2024-01-01T00:00:00+00:00", "path": path}
    )
    manager.lock_path_for(path).write_text(content, encoding="utf-8")


@pytest.fixture()
def manager(tmp_path):
    return SessionLockManager(tmp_path / "locks")


@pytest.fixture()
def target(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("a,b\n", encoding="utf-8")
    return str(path)


# ---------------------------------------------------------------------------
# Lock layout
# ---------------------------------------------------------------------------

class TestLayout:
    def test_lock_name(self):
        name = lock_name_for("/tmp/x.csv")
        assert name.endswith(".lock")
        assert len(name) == 16 + len(".lock")

    def test_lock_content(self, manager, target):
        lock = manager.acquire(target)
        holder = manager.read_holder(target)
        assert holder["pid"] == os.getpid()
        assert holder["path"] == target
        assert holder["acquired_at"] == lock.acquired_at

    def test_relative_path_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.acquire("relative.csv")

    def test_pid_alive(self):
        assert pid_alive(os.getpid())
        assert not pid_alive(_dead_pid())
        assert not pid_alive(0)


# ---------------------------------------------------------------------------
# Acquire / release
# ---------------------------------------------------------------------------

class TestAcquire:
    def test_conflict_with_live_holder(self, manager, target):
        manager.acquire(target)
        with pytest.raises(AlreadyLocked) as exc_info:
            manager.acquire(target)
        assert exc_info.value.pid == os.getpid()
        assert exc_info.value.path == target

    def test_stale_holder_reclaimed(self, manager, target):
        _write_holder(manager, target, _dead_pid())
        lock = manager.acquire(target)
        assert lock.pid == os.getpid()
        assert manager.read_holder(target)["pid"] == os.getpid()

    def test_leftover_lock_with_own_pid_reclaimed(self, manager, target):
        # same pid as this process, but written by an earlier run
        _write_holder(manager, target, os.getpid())
        lock = manager.acquire(target)
        assert manager.read_holder(target)["acquired_at"] == lock.acquired_at

    def test_own_lock_conflicts_across_managers(self, manager, target):
        manager.acquire(target)
        other = SessionLockManager(manager.lock_dir)
        with pytest.raises(AlreadyLocked) as exc_info:
            other.acquire(target)
        assert exc_info.value.pid == os.getpid()

    def test_released_lock_can_be_taken_again(self, manager, target):
        lock = manager.acquire(target)
        manager.release(lock)
        _write_holder(manager, target, os.getpid())
        assert manager.acquire(target).pid == os.getpid()

    def test_corrupt_lock_reclaimed(self, manager, target):
        _write_holder(manager, target, None, raw="{not json")
        lock = manager.acquire(target)
        assert manager.read_holder(target)["pid"] == lock.pid

    def test_distinct_paths_do_not_conflict(self, manager, tmp_path):
        a = str(tmp_path / "a.csv")
        b = str(tmp_path / "b.csv")
        manager.acquire(a)
        manager.acquire(b)
        assert manager.lock_path_for(a) != manager.lock_path_for(b)

    def test_release_removes_file_once(self, manager, target):
        lock = manager.acquire(target)
        manager.release(lock)
        assert not manager.lock_path_for(target).exists()
        manager.release(lock)
        assert manager.acquire(target).pid == os.getpid()

    def test_release_leaves_foreign_lock(self, manager, target):
        lock = manager.acquire(target)
        _write_holder(manager, target, lock.pid + 1)
        manager.release(lock)
        assert manager.lock_path_for(target).exists()

    def test_registry_releases(self, tmp_path, target):
        registry = CleanupRegistry()
        manager = SessionLockManager(tmp_path / "locks", registry)
        manager.acquire(target)
        registry.run()
        assert not manager.lock_path_for(target).exists()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class TestSession:
    def test_open_and_close(self, manager, target):
        registry = CleanupRegistry()
        session = open_session(target, registry, manager)
        assert session.temp_dir.is_dir()
        assert session.thumbs_dir.is_dir()
        assert manager.lock_path_for(target).exists()

        session.close()
        assert not session.temp_dir.exists()
        assert not manager.lock_path_for(target).exists()
        session.close()

    def test_registry_closes_session(self, manager, target):
        registry = CleanupRegistry()
        session = open_session(target, registry, manager)
        registry.run()
        assert session.closed
        assert not session.temp_dir.exists()

    def test_stdin_has_no_lock(self, manager):
        registry = CleanupRegistry()
        session = open_session("-", registry, manager)
        assert session.lock is None
        session.close()

    def test_conflict_creates_nothing(self, manager, target):
        registry = CleanupRegistry()
        open_session(target, registry, manager)
        with pytest.raises(AlreadyLocked):
            open_session(target, CleanupRegistry(), manager)
        registry.run()
