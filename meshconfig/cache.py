"""
Mesh config cache: a thread-safe, always-valid copy of the mesh config file.

- get() never does I/O and never fails; it returns an immutable snapshot.
- A background thread reloads the file on every watcher notification.
- Reload is fail-safe: read or parse errors are logged and the previous value stays.
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from meshconfig.config.loader import read_mesh_config
from meshconfig.config.schemas import MeshConfig, default_mesh_config
from meshconfig.errors import MeshConfigParseError, RegistrationError, ReloadIOError
from meshconfig.watch.base import Watcher
from meshconfig.watch.filewatcher import FileWatcher

logger = structlog.get_logger(__name__)

_JOIN_TIMEOUT = 5.0


class Cache(ABC):
    """Source of the current mesh config."""

    @abstractmethod
    def get(self) -> MeshConfig:
        """Return the current mesh config."""
        ...


class StaticCache(Cache):
    """Cache that always returns the same value (tests, one-shot tools)."""

    def __init__(self, value: MeshConfig | None = None):
        self._value = value if value is not None else default_mesh_config()

    def get(self) -> MeshConfig:
        return self._value


class FsCache(Cache):
    """Cache backed by a watched file. Build it with new_cache_from_file()."""

    def __init__(self, path: str, watcher: Watcher, default: MeshConfig, owns_watcher: bool = False):
        self._path = str(path)
        self._watcher = watcher
        self._owns_watcher = owns_watcher
        self._default = default
        self._cached_lock = threading.Lock()
        self._cached = default
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def default(self) -> MeshConfig:
        return self._default

    @property
    def running(self) -> bool:
        """True while the background reload thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def get(self) -> MeshConfig:
        """Return the cached mesh config (frozen; safe to share)."""
        with self._cached_lock:
            return self._cached

    def reload(self) -> bool:
        """
        Read the file and replace the cached value if it parses.

        Returns:
            True if the cached value was replaced. On read or parse failure the
            error is logged and the previous value is kept. No-op after close().
        """
        if self._closed.is_set():
            return False
        try:
            cfg = read_mesh_config(self._path, self._default)
        except ReloadIOError as e:
            logger.error("mesh_config_read_failed", path=self._path, error=e.reason)
            return False
        except MeshConfigParseError as e:
            logger.error("mesh_config_parse_failed", path=self._path, error=str(e))
            return False
        with self._cached_lock:
            if self._closed.is_set():
                return False
            self._cached = cfg
        logger.info("mesh_config_reloaded", path=self._path, config=cfg.model_dump(mode="json", by_alias=True))
        return True

    def start(self) -> None:
        """Start the background thread that reloads on each notification."""
        if self._thread is not None:
            return
        events = self._watcher.events(self._path)
        self._thread = threading.Thread(
            target=self._consume,
            args=(events,),
            name=f"meshconfig-reload:{self._path}",
            daemon=True,
        )
        self._thread.start()

    def _guarded_reload(self) -> None:
        """reload() that logs any unexpected error instead of raising it."""
        try:
            self.reload()
        except Exception as e:
            logger.exception("mesh_config_reload_failed", path=self._path, error=str(e))

    def _consume(self, events) -> None:
        for _ in events:
            if self._closed.is_set():
                break
            self._guarded_reload()
        logger.info("mesh_config_watch_stopped", path=self._path)

    def close(self) -> None:
        """
        Release the watch on this file and stop the reload thread.

        get() keeps returning the last value. Raises CloseError if the watcher
        fails to release; the reload thread stops regardless.
        """
        self._closed.set()
        try:
            try:
                self._watcher.remove(self._path)
            finally:
                if self._owns_watcher:
                    self._watcher.close()
        finally:
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(_JOIN_TIMEOUT)

    def __enter__(self) -> "FsCache":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def new_cache_from_file(
    path: str | Path,
    watcher: Watcher | None = None,
    default: MeshConfig | None = None,
    debounce: float = 0.1,
) -> FsCache:
    """
    Build a mesh config cache that follows the file at path.

    Args:
        path: Mesh config file (YAML or JSON).
        watcher: Watch source; a new FileWatcher (owned and closed by the cache) when omitted.
        default: Base config the file is merged onto; default_mesh_config() when omitted.
        debounce: Debounce seconds for the FileWatcher created here.

    Returns:
        Running FsCache. Its value is the file's config, or default if the
        initial load failed (logged, not raised).

    Raises:
        RegistrationError: path cannot be watched (e.g. it does not exist).
    """
    key = str(path)
    owns_watcher = watcher is None
    if watcher is None:
        watcher = FileWatcher(debounce=debounce)
    try:
        watcher.add(key)
    except RegistrationError:
        if owns_watcher:
            watcher.close()
        raise
    cache = FsCache(key, watcher, default if default is not None else default_mesh_config(), owns_watcher)
    cache._guarded_reload()
    cache.start()
    return cache
