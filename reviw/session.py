"""Review session: the lock, temp directory and port owned by one server."""

import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from reviw.registry import CleanupRegistry, remove_tree
from reviw.session_lock import Lock, SessionLockManager

logger = logging.getLogger(__name__)

TEMP_PREFIX = "reviw-"


@dataclass
class Session:
    target_path: str
    lock: Optional[Lock]
    temp_dir: Path
    port: int = 0
    registry: Optional[CleanupRegistry] = None
    lock_manager: Optional[SessionLockManager] = None
    closed: bool = False
    _unregister: Optional[Callable[[], None]] = field(default=None, repr=False)

    @property
    def thumbs_dir(self) -> Path:
        """Where emitted timeline thumbnails are kept until the session ends."""
        path = self.temp_dir / "thumbs"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def close(self) -> None:
        """Release the lock and purge the temp directory. Idempotent."""
        if self.closed:
            return
        self.closed = True
        if self.lock is not None and self.lock_manager is not None:
            self.lock_manager.release(self.lock)
        remove_tree(self.temp_dir)
        if self._unregister is not None:
            self._unregister()
        logger.debug("session for %s closed", self.target_path)


def open_session(
    target_path: str,
    registry: CleanupRegistry,
    lock_manager: Optional[SessionLockManager] = None,
) -> Session:
    """Acquire the lock for ``target_path`` and create its temp directory.

    Stdin targets ("-") have no file to lock and get no lock. Cleanup is
    registered with ``registry`` so the session ends even on a signal.

    Raises:
        AlreadyLocked: If another live process is reviewing the same file.
    """
    lock = None
    if lock_manager is not None and target_path != "-":
        lock = lock_manager.acquire(target_path)
    temp_dir = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
    session = Session(
        target_path=target_path,
        lock=lock,
        temp_dir=temp_dir,
        registry=registry,
        lock_manager=lock_manager,
    )
    session._unregister = registry.register_cleanup(session.close, name=f"session:{target_path}")
    return session
