# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""File system watcher that feeds debounced change batches to the engine.

- Watchdog library for cross-platform file watching
- Only .NET-relevant sources (.cs, .csproj, .razor, .props, .targets)
- Ignore rules shared with content hashing (.gitignore, skip dirs, user patterns)
- Changes collected for ``debounce_ms`` of quiet, then delivered as one
  sorted batch of repo-relative paths

The callback runs on the debounce timer thread. It should hand the batch off
(for example to ``Engine.run``) and must not assume it is on the main thread.
"""

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from dotnet_incremental.ignore_rules import IgnoreRules, is_relevant_source

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Callback signature: (sorted repo-relative paths) -> None
ChangeCallback = Callable[[List[str]], None]


class ChangeWatcher:
    """Watches a repository and reports batches of changed source files.

    Thread Safety:
        Watchdog delivers events on its own thread and batches are flushed on
        a timer thread; the pending set and timer are guarded by _lock.

    Usage:
        watcher = ChangeWatcher(root, rules, on_change=engine_callback)
        watcher.start()
        # ...
        watcher.stop()
    """

    def __init__(
        self,
        project_root: Path,
        rules: IgnoreRules,
        on_change: ChangeCallback,
        debounce_ms: int = 300,
    ):
        """Initialize ChangeWatcher.

        Args:
            project_root: Repository root to watch recursively.
            rules: Ignore rules shared with the rest of the engine.
            on_change: Receives each debounced batch.
            debounce_ms: Quiet period before a batch is delivered.
        """
        self.project_root = Path(project_root).resolve()
        self.rules = rules
        self.on_change = on_change
        self.debounce_seconds = max(debounce_ms, 0) / 1000.0

        self._pending: Set[str] = set()
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

        self._observer: Optional["BaseObserver"] = None
        self._event_handler = _ChangeEventHandler(self)

    def _relative(self, file_path: str) -> Optional[str]:
        try:
            return Path(file_path).resolve().relative_to(self.project_root).as_posix()
        except ValueError:
            return None

    def record(self, file_path: str) -> bool:
        """Record one changed path and (re)arm the debounce timer.

        Args:
            file_path: Absolute or repo-relative path.

        Returns:
            True if the path was accepted into the pending batch.
        """
        rel_path = self._relative(file_path) if Path(file_path).is_absolute() else file_path
        if rel_path is None:
            return False
        rel_path = rel_path.replace("\\", "/")
        if not is_relevant_source(rel_path) or self.rules.should_ignore(rel_path):
            return False

        with self._lock:
            self._pending.add(rel_path)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self.flush)
            self._timer.daemon = True
            self._timer.start()
        logger.debug(f"Change recorded: {rel_path}")
        return True

    def flush(self) -> List[str]:
        """Deliver the pending batch now, if there is one.

        Returns:
            The delivered batch (empty when nothing was pending).
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            batch = sorted(self._pending)
            self._pending.clear()

        if not batch:
            return batch

        logger.info(f"{len(batch)} file(s) changed")
        try:
            self.on_change(batch)
        except Exception as e:
            # The watcher keeps running; the next batch gets a fresh attempt
            logger.error(f"Change callback failed: {e}")
        return batch

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def start(self) -> None:
        """Start watching file system.

        Raises:
            RuntimeError: If watcher is already running
        """
        if self._observer is not None and self._observer.is_alive():
            raise RuntimeError("ChangeWatcher is already running")

        self._observer = Observer()
        self._observer.schedule(  # type: ignore  # watchdog types vary by version
            self._event_handler, str(self.project_root), recursive=True
        )
        self._observer.start()  # type: ignore  # watchdog types vary by version

        logger.info(f"ChangeWatcher started, monitoring {self.project_root}")

    def stop(self) -> None:
        """Stop watching and discard any batch still waiting on the timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()

        if self._observer is not None and self._observer.is_alive():
            self._observer.stop()  # type: ignore  # watchdog types vary by version
            self._observer.join(timeout=5.0)
            logger.info("ChangeWatcher stopped")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class _ChangeEventHandler(FileSystemEventHandler):
    """Internal event handler for watchdog; delegates to ChangeWatcher."""

    def __init__(self, watcher: ChangeWatcher):
        super().__init__()
        self.watcher = watcher

    def _handle_path(self, path: object) -> None:
        self.watcher.record(str(path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Treated as delete of the old path plus create of the new one."""
        if event.is_directory:
            return
        self._handle_path(event.src_path)
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            self._handle_path(dest_path)
