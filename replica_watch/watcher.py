"""File system watcher for Replica Watcher.

Uses the watchdog library to monitor the source folder and turns its
notifications into ``ChangeEvent`` values for the engine. Creations and
modifications can optionally be held until the file stops growing, so a
large write produces one verification instead of dozens.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Any

from watchdog.events import (
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from replica_watch.models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.5


class _SettleTracker:
    """Holds created/changed events until their file has been unchanged for a while."""

    def __init__(self, settle_seconds: float, on_settled: Callable[[ChangeEvent], None]):
        self._settle_seconds = max(0.0, settle_seconds)
        self._on_settled = on_settled
        # source_path -> (event, last_seen, last_size)
        self._pending: dict[str, tuple[ChangeEvent, float, int]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def settle_seconds(self) -> float:
        return self._settle_seconds

    def start(self) -> None:
        if not self._settle_seconds:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll, daemon=True, name="SettleTracker"
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            self._pending.clear()

    def submit(self, event: ChangeEvent) -> None:
        """Pass *event* on now, or hold it until its file settles."""
        if event.kind in (ChangeKind.DELETED, ChangeKind.RENAMED):
            self.discard(event.source_path)
            if event.previous_name:
                previous = os.path.join(os.path.dirname(event.source_path), event.previous_name)
                self.discard(previous)
            self._emit(event)
            return
        if not self._settle_seconds:
            self._emit(event)
            return
        try:
            size = os.stat(event.source_path).st_size
        except OSError:
            return
        with self._lock:
            held = self._pending.get(event.source_path)
            if held and held[0].kind is ChangeKind.CREATED:
                # created-then-modified is still a creation
                event = held[0]
            self._pending[event.source_path] = (event, time.monotonic(), size)
        logger.debug("Holding %s until settled (size=%d)", event.source_path, size)

    def discard(self, path: str) -> None:
        with self._lock:
            self._pending.pop(path, None)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _poll(self) -> None:
        """Periodically release events whose files have stopped changing."""
        while not self._stop.is_set():
            settled: list[ChangeEvent] = []
            now = time.monotonic()
            with self._lock:
                for path, (event, last_seen, last_size) in list(self._pending.items()):
                    try:
                        current_size = os.stat(path).st_size
                    except OSError:
                        # File vanished; a delete event will follow
                        del self._pending[path]
                        continue
                    if current_size != last_size:
                        self._pending[path] = (event, now, current_size)
                    elif now - last_seen >= self._settle_seconds:
                        settled.append(event)
                        del self._pending[path]

            for event in settled:
                logger.debug("File settled: %s", event.source_path)
                self._emit(event)

            self._stop.wait(timeout=_POLL_INTERVAL)

    def _emit(self, event: ChangeEvent) -> None:
        try:
            self._on_settled(event)
        except Exception:
            logger.exception("Error dispatching change event for %s", event.source_path)


class ChangeHandler(FileSystemEventHandler):
    """Watchdog handler that converts file notifications into change events."""

    def __init__(
        self,
        tracker: _SettleTracker,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
    ):
        super().__init__()
        self._tracker = tracker
        self._include_patterns = include_patterns or ["*"]
        self._exclude_patterns = exclude_patterns or []

    def matches(self, path: str) -> bool:
        """Return whether the file name of *path* passes the name filter."""
        name = os.path.basename(path).lower()
        if not any(fnmatch.fnmatch(name, p.lower()) for p in self._include_patterns):
            logger.debug("Ignoring %s (does not match any include pattern)", name)
            return False
        for pattern in self._exclude_patterns:
            if fnmatch.fnmatch(name, pattern.lower()):
                logger.debug("Excluding %s (matches %s)", name, pattern)
                return False
        return True

    def _submit(self, path: str, kind: ChangeKind, previous_name: str | None = None) -> None:
        self._tracker.submit(ChangeEvent.from_path(path, kind, previous_name))

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if self.matches(path):
            self._submit(path, ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if self.matches(path):
            self._submit(path, ChangeKind.CHANGED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if self.matches(path):
            self._submit(path, ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = os.fsdecode(event.src_path)
        dest = os.fsdecode(event.dest_path)
        src_ok, dest_ok = self.matches(src), self.matches(dest)
        if src_ok and dest_ok:
            self._submit(dest, ChangeKind.RENAMED, os.path.basename(src))
        elif src_ok:
            # renamed to something we don't track: gone as far as servers care
            self._submit(src, ChangeKind.DELETED)
        elif dest_ok:
            self._submit(dest, ChangeKind.CREATED)


class FolderWatcher:
    """High-level watcher that combines watchdog with the settle tracker.

    Usage:
        watcher = FolderWatcher(source, engine.dispatch, include_patterns=["*.xml"])
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        source_folder: str,
        on_event: Callable[[ChangeEvent], None],
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        recursive: bool = True,
        settle_seconds: float = 0,
    ):
        self.source_folder = source_folder
        self._recursive = recursive
        self._tracker = _SettleTracker(settle_seconds, on_event)
        self._handler = ChangeHandler(
            self._tracker,
            include_patterns or None,
            exclude_patterns or None,
        )
        self._observer: Any | None = None

    # ---- lifecycle ----

    def start(self) -> None:
        """Start watching the source folder."""
        if not os.path.isdir(self.source_folder):
            logger.error("Source folder does not exist: %s", self.source_folder)
            raise FileNotFoundError(
                f"Source folder does not exist: {self.source_folder}"
            )

        observer = Observer()
        self._observer = observer
        observer.schedule(self._handler, self.source_folder, recursive=self._recursive)
        observer.start()
        self._tracker.start()
        logger.info(
            "Watching '%s' (recursive=%s, settle=%gs)",
            self.source_folder,
            self._recursive,
            self._tracker.settle_seconds,
        )

    def stop(self) -> None:
        """Stop watching and release resources."""
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._tracker.stop()
        logger.info("Watcher stopped.")

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._observer is not None and self._observer.is_alive()

    @property
    def pending_count(self) -> int:
        """Return the number of changes waiting for their file to settle."""
        return self._tracker.pending_count
