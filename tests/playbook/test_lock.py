"""Tests for the mkdir-based directory lock."""

import multiprocessing
import os
import shutil
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from playbook.lock import (
    DirectoryLock,
    LockRegistry,
    LockTimeoutError,
    lock_dir_for,
    pid_is_running,
    with_lock,
)


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _increment_in_process(resource: str, rounds: int) -> None:
    path = Path(resource)

    def op():
        value = int(path.read_text())
        time.sleep(0.005)
        path.write_text(str(value + 1))

    for _ in range(rounds):
        with_lock(path, op, retries=2000, retry_delay=0.005)


def _plant_lock(resource, pid: int, age_seconds: float = 0.0):
    """Create a lock directory as if another process held it."""
    lock_dir = lock_dir_for(resource)
    lock_dir.mkdir(parents=True)
    (lock_dir / "pid").write_text(str(pid))
    (lock_dir / "owner").write_text("other-holder")
    if age_seconds:
        old = time.time() - age_seconds
        os.utime(lock_dir, (old, old))
    return lock_dir


class TestAcquireRelease:
    def test_lock_dir_naming(self, tmp_path):
        assert lock_dir_for(tmp_path / "playbook.yaml") == tmp_path / "playbook.yaml.lock.d"

    def test_writes_metadata_and_cleans_up(self, tmp_path):
        resource = tmp_path / "playbook.yaml"
        with DirectoryLock(resource) as lock:
            assert lock.lock_dir.is_dir()
            assert (lock.lock_dir / "pid").read_text() == str(os.getpid())
            assert (lock.lock_dir / "owner").read_text() == lock.token
        assert not lock_dir_for(resource).exists()

    def test_with_lock_returns_value(self, tmp_path):
        assert with_lock(tmp_path / "r", lambda: 42) == 42
        assert not lock_dir_for(tmp_path / "r").exists()

    def test_released_on_exception(self, tmp_path):
        resource = tmp_path / "r"

        def boom():
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            with_lock(resource, boom)
        assert not lock_dir_for(resource).exists()

    def test_creates_missing_parent(self, tmp_path):
        resource = tmp_path / "deep" / "er" / "playbook.yaml"
        with DirectoryLock(resource, retries=0):
            assert lock_dir_for(resource).is_dir()

    def test_heartbeat_must_be_shorter_than_stale(self, tmp_path):
        with pytest.raises(ValueError):
            DirectoryLock(tmp_path / "r", stale_threshold=1.0, heartbeat_interval=2.0)

    def test_metadata_write_failure_releases_directory(self, tmp_path, monkeypatch):
        resource = tmp_path / "r"

        def failing_write(self, *args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(Path, "write_text", failing_write)
        registry = LockRegistry()
        with pytest.raises(OSError):
            DirectoryLock(resource, retries=0, registry=registry).acquire()
        monkeypatch.undo()

        assert not lock_dir_for(resource).exists()
        assert registry.held() == []
        assert with_lock(resource, lambda: "ran", retries=0) == "ran"


class TestMutualExclusion:
    def test_concurrent_increments_are_serialised(self, tmp_path):
        resource = tmp_path / "counter"
        resource.write_text("0")

        def increment():
            def op():
                value = int(resource.read_text())
                time.sleep(0.005)
                resource.write_text(str(value + 1))

            with_lock(resource, op, retries=500, retry_delay=0.005)

        with ThreadPoolExecutor(max_workers=8) as pool:
            for f in [pool.submit(increment) for _ in range(24)]:
                f.result()

        assert resource.read_text() == "24"
        assert not lock_dir_for(resource).exists()

    def test_separate_processes_are_serialised(self, tmp_path):
        ctx = multiprocessing.get_context("fork")
        resource = tmp_path / "counter"
        resource.write_text("0")

        workers = [ctx.Process(target=_increment_in_process, args=(str(resource), 5)) for _ in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=60)

        assert [w.exitcode for w in workers] == [0, 0, 0, 0]
        assert resource.read_text() == "20"
        assert not lock_dir_for(resource).exists()

    def test_times_out_when_held(self, tmp_path):
        resource = tmp_path / "r"
        _plant_lock(resource, os.getpid())
        start = time.monotonic()
        with pytest.raises(LockTimeoutError) as exc:
            with_lock(resource, lambda: None, retries=3, retry_delay=0.01)
        assert exc.value.retries == 3
        assert time.monotonic() - start < 2
        # Someone else's lock is left alone
        assert lock_dir_for(resource).exists()


class TestRecovery:
    def test_dead_pid_is_not_running(self):
        assert not pid_is_running(_dead_pid())
        assert pid_is_running(os.getpid())
        assert not pid_is_running(0)

    def test_abandoned_lock_reclaimed(self, tmp_path):
        resource = tmp_path / "r"
        _plant_lock(resource, _dead_pid())
        assert with_lock(resource, lambda: "ran", retries=1, retry_delay=0.01) == "ran"
        assert not lock_dir_for(resource).exists()

    def test_stale_lock_reclaimed(self, tmp_path):
        resource = tmp_path / "r"
        # Live pid, so only the age check can reclaim it
        _plant_lock(resource, os.getpid(), age_seconds=60)
        assert with_lock(resource, lambda: "ran", retries=1, stale_threshold=30) == "ran"

    def test_fresh_lock_with_live_pid_not_reclaimed(self, tmp_path):
        resource = tmp_path / "r"
        _plant_lock(resource, os.getpid(), age_seconds=1)
        with pytest.raises(LockTimeoutError):
            with_lock(resource, lambda: None, retries=1, retry_delay=0.01, stale_threshold=30)

    def test_heartbeat_refreshes_mtime(self, tmp_path):
        resource = tmp_path / "r"
        with DirectoryLock(resource, stale_threshold=1.0, heartbeat_interval=0.05) as lock:
            first = lock.lock_dir.stat().st_mtime
            time.sleep(0.3)
            assert lock.lock_dir.stat().st_mtime > first

    def test_reclaim_backs_off_when_lock_changed_hands(self, tmp_path, monkeypatch):
        resource = tmp_path / "r"
        lock_dir = _plant_lock(resource, _dead_pid())
        real_pid_is_running = pid_is_running
        swapped = []

        def dead_then_replaced(pid):
            # Between the liveness check and the rename, another contender
            # reclaims the lock and takes it for itself
            if not swapped:
                swapped.append(pid)
                shutil.rmtree(lock_dir)
                lock_dir.mkdir()
                (lock_dir / "pid").write_text(str(os.getpid()))
                (lock_dir / "owner").write_text("new-holder")
                return False
            return real_pid_is_running(pid)

        monkeypatch.setattr("playbook.lock.pid_is_running", dead_then_replaced)
        with pytest.raises(LockTimeoutError):
            with_lock(resource, lambda: None, retries=1, retry_delay=0.01, stale_threshold=30)
        assert (lock_dir / "owner").read_text() == "new-holder"
        assert [p.name for p in tmp_path.iterdir()] == [lock_dir.name]


class TestOwnership:
    def test_release_skips_lock_owned_by_someone_else(self, tmp_path):
        resource = tmp_path / "r"
        lock = DirectoryLock(resource)
        lock.acquire()
        # Simulates a contender that reclaimed and re-acquired the lock
        (lock.lock_dir / "owner").write_text("another-token")
        lock.release()
        assert lock.lock_dir.exists()
        assert (lock.lock_dir / "owner").read_text() == "another-token"


class TestRegistry:
    def test_tracks_held_locks(self, tmp_path):
        registry = LockRegistry()
        resource = tmp_path / "r"
        with DirectoryLock(resource, registry=registry):
            assert registry.held() == [lock_dir_for(resource)]
        assert registry.held() == []

    def test_release_all_removes_directories(self, tmp_path):
        registry = LockRegistry()
        first = DirectoryLock(tmp_path / "a", registry=registry)
        second = DirectoryLock(tmp_path / "b", registry=registry)
        first.acquire()
        second.acquire()

        assert registry.release_all() == 2
        assert not first.lock_dir.exists()
        assert not second.lock_dir.exists()
        assert registry.held() == []

        # Stop heartbeats; the directories are already gone
        first.release()
        second.release()

    def test_release_all_empty(self):
        assert LockRegistry().release_all() == 0
