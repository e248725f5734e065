"""
Abstract watch source: turns "this file changed" into a stream of notifications.

Coalescing bursts of writes is the watcher's job; consumers reload once per
notification they receive.
"""

from abc import ABC, abstractmethod
from typing import Iterator

# Marks the end of an event stream.
CLOSED = object()


class Watcher(ABC):
    """Produces change notifications for registered file paths."""

    @abstractmethod
    def add(self, path: str) -> None:
        """
        Start watching path.

        Raises:
            RegistrationError: path is missing, already watched, or cannot be watched.
        """
        ...

    @abstractmethod
    def events(self, path: str) -> Iterator[str]:
        """
        Blocking iterator of notifications for path (each item is the path).

        Ends when path is removed or the watcher is closed.
        """
        ...

    @abstractmethod
    def remove(self, path: str) -> None:
        """Stop watching path and end its event stream. Raises CloseError on failure."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Stop watching everything and end every event stream. Raises CloseError on failure."""
        ...
