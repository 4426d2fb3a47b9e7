"""Per-file exclusive session locks.

A lock is a JSON file under the lock directory named after the first 16 hex
digits of sha256(absolute target path). It records the holder's pid, an
ISO-8601 UTC acquisition time and the target path. A lock whose holder pid
is no longer running (or whose content cannot be read) is stale and is
reclaimed on the next acquisition attempt. A lock recording this
process's own pid that this process did not take (left by an earlier run
that happened to have the same pid) is stale as well.
"""

import errno
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from reviw.registry import CleanupRegistry

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
HASH_PREFIX_LEN = 16
MAX_ACQUIRE_ATTEMPTS = 3

# lock files this process currently holds, across all managers
_HELD_LOCKS: set[Path] = set()


class AlreadyLocked(Exception):
    """A live process already holds the lock for this path."""

    def __init__(self, path: str, pid: Optional[int], acquired_at: Optional[str] = None):
        self.path = path
        self.pid = pid
        self.acquired_at = acquired_at
        holder = f"pid {pid}" if pid is not None else "another process"
        super().__init__(f"{path} is already open for review by {holder}")


@dataclass
class Lock:
    """Handle for an acquired lock."""

    target_path: str
    lock_file: Path
    pid: int
    acquired_at: str
    released: bool = False


def lock_name_for(path: str) -> str:
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()
    return digest[:HASH_PREFIX_LEN] + LOCK_SUFFIX


def pid_alive(pid: int) -> bool:
    """Return True if a process with this pid is running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError as exc:
        return exc.errno == errno.EPERM
    return True


class SessionLockManager:
    """Acquires and releases per-path locks under ``lock_dir``.

    Every acquired lock is released through the shared CleanupRegistry, so a
    crash-free shutdown always removes it; ``release`` is idempotent.
    """

    def __init__(self, lock_dir: Path, registry: Optional[CleanupRegistry] = None):
        self.lock_dir = Path(lock_dir)
        self.registry = registry

    def lock_path_for(self, path: str) -> Path:
        return self.lock_dir / lock_name_for(path)

    def read_holder(self, path: str) -> Optional[dict[str, Any]]:
        """Return the parsed content of the lock for ``path``, or None."""
        return self._read_lock_file(self.lock_path_for(path))

    @staticmethod
    def _read_lock_file(lock_file: Path) -> Optional[dict[str, Any]]:
        try:
            with open(lock_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _held_by_live_process(lock_file: Path, holder_pid: Any) -> bool:
        if not isinstance(holder_pid, int):
            return False
        if holder_pid == os.getpid():
            return lock_file in _HELD_LOCKS
        return pid_alive(holder_pid)

    def acquire(self, path: str) -> Lock:
        """Take the lock for an absolute path.

        Raises:
            AlreadyLocked: If a running process holds the lock.
            ValueError: If ``path`` is not absolute.
        """
        if not os.path.isabs(path):
            raise ValueError(f"lock target must be an absolute path: {path}")
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock_file = self.lock_path_for(path)
        pid = os.getpid()

        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            acquired_at = datetime.now(timezone.utc).isoformat()
            content = json.dumps({"pid": pid, "acquired_at": acquired_at, "path": path})
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_lock_file(lock_file)
                if holder is None:
                    # vanished between open and read; try again
                    continue
                holder_pid = holder.get("pid")
                if self._held_by_live_process(lock_file, holder_pid):
                    raise AlreadyLocked(path, holder_pid, holder.get("acquired_at"))
                logger.info("reclaiming stale lock %s (holder pid %s)", lock_file, holder_pid)
                try:
                    lock_file.unlink()
                except FileNotFoundError:
                    pass
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            _HELD_LOCKS.add(lock_file)

            lock = Lock(target_path=path, lock_file=lock_file, pid=pid, acquired_at=acquired_at)
            if self.registry is not None:
                self.registry.register_cleanup(lambda: self.release(lock), name=f"lock:{path}")
            logger.debug("acquired lock %s for %s", lock_file, path)
            return lock

        holder = self._read_lock_file(lock_file) or {}
        raise AlreadyLocked(path, holder.get("pid"), holder.get("acquired_at"))

    def release(self, lock: Lock) -> None:
        """Remove the lock file if this process still holds it. Idempotent."""
        if lock.released:
            return
        lock.released = True
        _HELD_LOCKS.discard(lock.lock_file)
        holder = self._read_lock_file(lock.lock_file)
        if holder is None:
            return
        if holder.get("pid") != lock.pid:
            logger.warning("not removing %s: now held by pid %s", lock.lock_file, holder.get("pid"))
            return
        try:
            lock.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("could not remove lock %s: %s", lock.lock_file, exc)
        else:
            logger.debug("released lock %s", lock.lock_file)
