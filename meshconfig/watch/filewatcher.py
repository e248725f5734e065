"""
watchdog-based file watcher.

- Watches the parent directory of each file, so atomic renames and Kubernetes
  ConfigMap "..data" symlink swaps are seen as well as in-place writes.
- Bursts of directory events are coalesced by a per-file debounce timer.
- A notification is emitted only when the file's SHA-256 changed since the last one.
"""

import hashlib
import os
import queue
import threading
from pathlib import Path
from typing import Iterator

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from meshconfig.errors import CloseError, RegistrationError
from meshconfig.watch.base import CLOSED, Watcher

logger = structlog.get_logger(__name__)

# Reads (ours included) produce these on inotify; they never change content.
_IGNORED_EVENTS = {"opened", "closed_no_write"}

_JOIN_TIMEOUT = 5.0


def _file_digest(path: Path) -> bytes:
    return hashlib.sha256(path.read_bytes()).digest()


class _FileWorker:
    """Debounce + content-hash filter for one watched file."""

    def __init__(self, path: Path, debounce: float):
        self.path = path
        self.debounce = debounce
        self.queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        # Serializes _check so a superseded timer cannot store a stale digest.
        self._check_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._closed = False
        self._digest: bytes | None = _file_digest(path)

    def touch(self) -> None:
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._check)
            self._timer.daemon = True
            self._timer.start()

    def _check(self) -> None:
        with self._check_lock:
            try:
                digest: bytes | None = _file_digest(self.path)
            except OSError:
                # Removed (or mid-rename); the reader will see the read error.
                digest = None
            with self._lock:
                if self._closed or digest == self._digest:
                    return
                self._digest = digest
                self.queue.put(str(self.path))

    def drain(self) -> Iterator[str]:
        while True:
            item = self.queue.get()
            if item is CLOSED:
                self.queue.put(CLOSED)
                return
            yield item

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
        self.queue.put(CLOSED)


class _DirHandler(FileSystemEventHandler):
    def __init__(self, watcher: "FileWatcher", directory: str):
        self._watcher = watcher
        self._directory = directory

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENTS:
            return
        self._watcher._touch_dir(self._directory)


class FileWatcher(Watcher):
    """Watcher backed by a single watchdog Observer thread."""

    def __init__(self, debounce: float = 0.1):
        self._debounce = debounce
        self._observer = Observer()
        self._lock = threading.Lock()
        self._workers: dict[str, _FileWorker] = {}
        self._watches: dict[str, object] = {}
        self._started = False
        self._closed = False

    def add(self, path: str) -> None:
        key = str(path)
        directory = os.path.dirname(os.path.abspath(key))
        with self._lock:
            if self._closed:
                raise RegistrationError(key, "watcher is closed")
            if key in self._workers:
                raise RegistrationError(key, "already watched")
            try:
                worker = _FileWorker(Path(key), self._debounce)
            except OSError as e:
                raise RegistrationError(key, e.strerror or str(e)) from e
            if directory not in self._watches:
                try:
                    self._watches[directory] = self._observer.schedule(
                        _DirHandler(self, directory), directory, recursive=False
                    )
                except OSError as e:
                    raise RegistrationError(key, e.strerror or str(e)) from e
            self._workers[key] = worker
            if not self._started:
                self._observer.start()
                self._started = True
        logger.info("file_watch_added", path=key, directory=directory)

    def events(self, path: str) -> Iterator[str]:
        """Raises KeyError when path was never added (or already removed)."""
        with self._lock:
            worker = self._workers[str(path)]
        return worker.drain()

    def remove(self, path: str) -> None:
        key = str(path)
        directory = os.path.dirname(os.path.abspath(key))
        with self._lock:
            worker = self._workers.pop(key, None)
            if worker is None:
                return
            still_used = any(
                os.path.dirname(os.path.abspath(p)) == directory for p in self._workers
            )
            watch = None if still_used else self._watches.pop(directory, None)
        worker.close()
        if watch is not None and not self._closed:
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as e:
                raise CloseError(f"cannot stop watching {directory}: {e}") from e
        logger.info("file_watch_removed", path=key)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            workers = list(self._workers.values())
            self._workers.clear()
            self._watches.clear()
        try:
            if self._started:
                self._observer.stop()
                self._observer.join(_JOIN_TIMEOUT)
        except (OSError, RuntimeError) as e:
            raise CloseError(f"cannot stop file watcher: {e}") from e
        finally:
            for worker in workers:
                worker.close()

    def _touch_dir(self, directory: str) -> None:
        with self._lock:
            workers = [
                w for p, w in self._workers.items()
                if os.path.dirname(os.path.abspath(p)) == directory
            ]
        for worker in workers:
            worker.touch()
