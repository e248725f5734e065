"""In-memory watcher for tests: notifications are injected by hand."""

import queue
import threading
from typing import Iterator

from meshconfig.errors import CloseError, RegistrationError
from meshconfig.watch.base import CLOSED, Watcher


class FakeWatcher(Watcher):
    """
    Watcher whose events come from inject_event().

    wait_idle() blocks until every injected event has been fully handled by
    the reader, i.e. the reader asked for the next event after it.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._queues: dict[str, queue.Queue] = {}
        self._pending = 0
        self._closed = False
        self.close_error: Exception | None = None
        self.added: list[str] = []

    def add(self, path: str) -> None:
        key = str(path)
        with self._cond:
            if self._closed:
                raise RegistrationError(key, "watcher is closed")
            if key in self._queues:
                raise RegistrationError(key, "already watched")
            self._queues[key] = queue.Queue()
            self.added.append(key)

    def events(self, path: str) -> Iterator[str]:
        with self._cond:
            q = self._queues[str(path)]
        return self._drain(q)

    def _drain(self, q: queue.Queue) -> Iterator[str]:
        while True:
            item = q.get()
            if item is CLOSED:
                q.put(CLOSED)
                return
            try:
                yield item
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

    def inject_event(self, path: str) -> bool:
        """Queue one notification for path. Returns False if the stream is already closed."""
        key = str(path)
        with self._cond:
            q = self._queues.get(key)
            if self._closed or q is None:
                return False
            self._pending += 1
            q.put(key)
            return True

    def wait_idle(self, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._pending <= 0, timeout)

    def remove(self, path: str) -> None:
        with self._cond:
            q = self._queues.pop(str(path), None)
        if q is not None:
            q.put(CLOSED)
        if self.close_error is not None:
            raise CloseError(str(self.close_error)) from self.close_error

    def close(self) -> None:
        with self._cond:
            self._closed = True
            queues = list(self._queues.values())
            self._queues.clear()
        for q in queues:
            q.put(CLOSED)
        if self.close_error is not None:
            raise CloseError(str(self.close_error)) from self.close_error

    @property
    def closed(self) -> bool:
        return self._closed
