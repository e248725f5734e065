"""Watch sources: file change notifications for the mesh config cache."""

from meshconfig.watch.base import Watcher
from meshconfig.watch.fake import FakeWatcher
from meshconfig.watch.filewatcher import FileWatcher

__all__ = ["FakeWatcher", "FileWatcher", "Watcher"]
