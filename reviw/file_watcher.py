"""Review target watcher — notices when the file under review changes on disk.

Uses watchdog to observe the target's directory (editors often replace a
file instead of writing it in place, so watching the file alone misses
saves). Matching events fire ``on_change`` on the observer thread; callers
that own an event loop must hop back onto it themselves.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class _TargetHandler(FileSystemEventHandler):
    """Filters directory events down to the watched file."""

    def __init__(self, watcher: "FileWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in ("modified", "created", "moved"):
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and Path(p).resolve() == self._watcher.target for p in paths):
            self._watcher._fire()


class FileWatcher:
    """Watches one file for changes.

    ``start`` is non-blocking (watchdog runs its own observer thread);
    ``stop`` joins it and is safe to call more than once.
    """

    def __init__(self, target: str, on_change: Callable[[], None]):
        self.target = Path(target).resolve()
        self.on_change = on_change
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        handler = _TargetHandler(self)
        self._observer = Observer()
        self._observer.schedule(handler, str(self.target.parent), recursive=False)
        self._observer.start()
        logger.debug("watching %s", self.target)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.debug("stopped watching %s", self.target)

    def _fire(self) -> None:
        try:
            self.on_change()
        except Exception as exc:
            logger.warning("change callback for %s failed: %s", self.target.name, exc)
