"""Advisory cross-process lock built on atomic mkdir.

A lock on ``<resource>`` is the directory ``<resource>.lock.d`` holding two
files: ``owner`` (a random token per acquisition) and ``pid``. While the lock
is held a heartbeat thread keeps the directory mtime fresh so long operations
are not mistaken for stale ones.

Contenders reclaim a lock when the recorded pid is gone (abandoned) or when
the mtime is older than the stale threshold. The holder only removes the
directory on release if its own token is still inside.
"""

import os
import shutil
import threading
import time
import uuid
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

LOCK_SUFFIX = ".lock.d"
DEFAULT_RETRIES = 20
DEFAULT_RETRY_DELAY = 0.1
DEFAULT_STALE_THRESHOLD = 30.0


class LockTimeoutError(Exception):
    """Raised when a lock could not be acquired within the retry budget."""

    def __init__(self, resource: str | Path, retries: int):
        self.resource = str(resource)
        self.retries = retries
        super().__init__(f"Could not acquire lock for {resource} after {retries} retries")


class LockRegistry:
    """Lock directories currently held by one component, for shutdown cleanup."""

    def __init__(self):
        self._held: set[Path] = set()
        self._mutex = threading.Lock()

    def add(self, lock_dir: Path) -> None:
        with self._mutex:
            self._held.add(lock_dir)

    def discard(self, lock_dir: Path) -> None:
        with self._mutex:
            self._held.discard(lock_dir)

    def held(self) -> list[Path]:
        with self._mutex:
            return sorted(self._held)

    def release_all(self) -> int:
        """Remove every held lock directory. Returns how many were removed."""
        with self._mutex:
            held = list(self._held)
            self._held.clear()
        released = 0
        for lock_dir in held:
            try:
                shutil.rmtree(lock_dir)
                released += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("lock.release_failed", lock=str(lock_dir), error=str(e))
        return released


def lock_dir_for(resource_path: str | Path) -> Path:
    path = Path(resource_path).expanduser()
    return path.with_name(path.name + LOCK_SUFFIX)


def pid_is_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _lock_identity(lock_dir: Path) -> tuple[Optional[str], Optional[str]]:
    return _read_text(lock_dir / "pid"), _read_text(lock_dir / "owner")


def _discard_lock_dir(lock_dir: Path, expected: tuple[Optional[str], Optional[str]]) -> bool:
    """Move the directory aside then delete it, so only one contender wins.

    ``expected`` is the (pid, owner) pair seen when the lock was judged dead.
    If the moved directory holds anything else, another contender reclaimed
    and re-acquired the lock in between; it is put back untouched.
    """
    tombstone = lock_dir.with_name(f"{lock_dir.name}.reclaimed-{uuid.uuid4().hex[:8]}")
    try:
        os.rename(lock_dir, tombstone)
    except OSError:
        return False
    if _lock_identity(tombstone) != expected:
        try:
            os.rename(tombstone, lock_dir)
        except OSError as e:
            logger.warning("lock.restore_failed", lock=str(lock_dir), error=str(e))
        else:
            logger.debug("lock.reclaim_lost_race", lock=str(lock_dir))
        return False
    shutil.rmtree(tombstone, ignore_errors=True)
    return True


def _try_remove_abandoned(lock_dir: Path) -> bool:
    identity = _lock_identity(lock_dir)
    raw = identity[0]
    if not raw:
        return False
    try:
        pid = int(raw)
    except ValueError:
        return False
    if pid_is_running(pid):
        return False
    if _discard_lock_dir(lock_dir, identity):
        logger.warning("lock.abandoned_reclaimed", lock=str(lock_dir), dead_pid=pid)
        return True
    return False


def _try_remove_stale(lock_dir: Path, stale_threshold: float) -> bool:
    identity = _lock_identity(lock_dir)
    try:
        age = time.time() - lock_dir.stat().st_mtime
    except OSError:
        return False
    if age <= stale_threshold:
        return False
    if _discard_lock_dir(lock_dir, identity):
        logger.warning("lock.stale_reclaimed", lock=str(lock_dir), age_seconds=round(age, 1))
        return True
    return False


class _Heartbeat:
    def __init__(self, lock_dir: Path, interval: float):
        self._lock_dir = lock_dir
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"lock-heartbeat:{lock_dir.name}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=self._interval + 1)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                os.utime(self._lock_dir)
            except OSError as e:
                logger.debug("lock.heartbeat_failed", lock=str(self._lock_dir), error=str(e))


class DirectoryLock(AbstractContextManager):
    """Context manager form of the mkdir lock.

    Usage:
        with DirectoryLock(path):
            ...
    """

    def __init__(
        self,
        resource_path: str | Path,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        stale_threshold: float = DEFAULT_STALE_THRESHOLD,
        heartbeat_interval: float | None = None,
        registry: LockRegistry | None = None,
    ):
        self.resource_path = Path(resource_path).expanduser()
        self.lock_dir = lock_dir_for(self.resource_path)
        self.retries = retries
        self.retry_delay = retry_delay
        self.stale_threshold = stale_threshold
        self.heartbeat_interval = heartbeat_interval or min(10.0, stale_threshold / 3)
        if self.heartbeat_interval >= stale_threshold:
            raise ValueError("heartbeat_interval must be shorter than stale_threshold")
        self.registry = registry
        self.token: str | None = None
        self._heartbeat: _Heartbeat | None = None

    def acquire(self) -> None:
        waits = 0
        while True:
            try:
                os.mkdir(self.lock_dir)
            except FileExistsError:
                if _try_remove_abandoned(self.lock_dir):
                    continue
                if _try_remove_stale(self.lock_dir, self.stale_threshold):
                    continue
                if waits >= self.retries:
                    raise LockTimeoutError(self.resource_path, self.retries)
                waits += 1
                time.sleep(self.retry_delay)
                continue
            except FileNotFoundError:
                self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
                continue

            self._on_acquired()
            return

    def _on_acquired(self) -> None:
        self.token = uuid.uuid4().hex
        # pid goes first: a contender that sees a pid but no owner still
        # treats the lock as live
        try:
            (self.lock_dir / "pid").write_text(str(os.getpid()))
            (self.lock_dir / "owner").write_text(self.token)
        except OSError as e:
            logger.warning("lock.metadata_write_failed", lock=str(self.lock_dir), error=str(e))
            shutil.rmtree(self.lock_dir, ignore_errors=True)
            self.token = None
            raise
        if self.registry is not None:
            self.registry.add(self.lock_dir)
        self._heartbeat = _Heartbeat(self.lock_dir, self.heartbeat_interval)
        self._heartbeat.start()
        logger.debug("lock.acquired", lock=str(self.lock_dir))

    def release(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None
        if self.registry is not None:
            self.registry.discard(self.lock_dir)

        owner = _read_text(self.lock_dir / "owner")
        if owner is None or owner != self.token:
            # Reclaimed by someone else after a stale timeout; not ours to remove
            logger.warning("lock.ownership_lost", lock=str(self.lock_dir))
            self.token = None
            return
        shutil.rmtree(self.lock_dir, ignore_errors=True)
        self.token = None
        logger.debug("lock.released", lock=str(self.lock_dir))

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def with_lock(
    resource_path: str | Path,
    operation: Callable[[], T],
    *,
    retries: int = DEFAULT_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    stale_threshold: float = DEFAULT_STALE_THRESHOLD,
    registry: LockRegistry | None = None,
) -> T:
    """Run ``operation`` while holding the lock for ``resource_path``."""
    with DirectoryLock(
        resource_path,
        retries=retries,
        retry_delay=retry_delay,
        stale_threshold=stale_threshold,
        registry=registry,
    ):
        return operation()
