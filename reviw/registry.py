"""Process-wide cleanup registry.

One CleanupRegistry is built at process start and handed to every component
that owns something to undo at shutdown (locks, temp directories, frame
output). ``run()`` executes the registered callbacks exactly once, newest
first, whichever shutdown path gets there first: normal exit, a signal, or
the exit protocol. A failing callback is logged and never stops the rest.
"""

import atexit
import itertools
import logging
import shutil
import threading
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


class CleanupRegistry:
    """Ordered set of shutdown callbacks with an idempotent ``run``."""

    def __init__(self):
        self._callbacks: dict[int, tuple[str, Callable[[], None]]] = {}
        self._ids = itertools.count()
        self._lock = threading.Lock()
        self._ran = False
        self._atexit_installed = False

    @property
    def has_run(self) -> bool:
        return self._ran

    def register_cleanup(self, fn: Callable[[], None], name: str = "") -> Callable[[], None]:
        """Register ``fn`` to run at shutdown.

        Returns:
            A function that unregisters ``fn`` (call it once the resource has
            already been released some other way).
        """
        with self._lock:
            if self._ran:
                raise RuntimeError("cleanup registry has already run")
            key = next(self._ids)
            self._callbacks[key] = (name or getattr(fn, "__name__", "cleanup"), fn)

        def unregister() -> None:
            with self._lock:
                self._callbacks.pop(key, None)

        return unregister

    def install_atexit(self) -> None:
        """Run the registry at interpreter exit as a backstop."""
        if not self._atexit_installed:
            atexit.register(self.run)
            self._atexit_installed = True

    def run(self) -> None:
        """Run every registered callback once, newest first."""
        with self._lock:
            if self._ran:
                return
            self._ran = True
            callbacks = [self._callbacks[k] for k in sorted(self._callbacks, reverse=True)]
            self._callbacks.clear()

        for name, fn in callbacks:
            try:
                fn()
            except Exception as exc:
                logger.warning("cleanup %s failed: %s", name, exc)


def remove_tree(path: Path) -> None:
    """Best-effort recursive delete; failures are logged, not raised."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("could not remove %s: %s", path, exc)
