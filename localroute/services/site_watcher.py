from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0


class SiteFileEventHandler(FileSystemEventHandler):
    """Calls ``on_change`` when the site list is modified, created or moved into place."""

    def __init__(
        self,
        sites_file: Path,
        on_change: Callable[[], object],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sites_file = sites_file.resolve()
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_trigger: float | None = None

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        candidates = [event.src_path, getattr(event, "dest_path", "")]
        return any(candidate and Path(candidate).resolve() == self.sites_file for candidate in candidates)

    def _trigger(self, event: FileSystemEvent) -> None:
        if not self._matches(event):
            return

        now = self._clock()
        with self._lock:
            if self._last_trigger is not None and now - self._last_trigger < self.debounce_seconds:
                return
            self._last_trigger = now

        logger.info("Site list changed (%s); refreshing", event.event_type)
        try:
            self.on_change()
        except Exception:
            logger.exception("Refresh after site list change failed")

    def on_modified(self, event: FileSystemEvent) -> None:
        self._trigger(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._trigger(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._trigger(event)


class SiteFileWatcher:
    def __init__(
        self,
        sites_file: str | Path,
        on_change: Callable[[], object],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.sites_file = Path(sites_file)
        self.handler = SiteFileEventHandler(self.sites_file, on_change, debounce_seconds)
        self._observer: Observer | None = None

    def start(self) -> None:
        if self._observer is not None:
            return
        # Editors often replace the file, so watch the directory rather than the inode.
        watch_dir = self.sites_file.resolve().parent
        observer = Observer()
        observer.schedule(self.handler, str(watch_dir), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.sites_file)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None

    def __enter__(self) -> SiteFileWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
