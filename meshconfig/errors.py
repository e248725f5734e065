"""
Exceptions raised by the mesh config cache and its collaborators.

- RegistrationError and CloseError reach the caller (construction / close).
- ReloadIOError and ReloadParseError are raised by the loader and absorbed by
  FsCache.reload(), which logs them and keeps the previous value.
"""


class MeshConfigError(Exception):
    """Base class for all mesh config errors."""


class RegistrationError(MeshConfigError):
    """Watching a path failed (missing file, already watched, OS limits)."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"cannot watch {path}: {reason}")


class ReloadIOError(MeshConfigError):
    """The mesh config file could not be read."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"error loading mesh config (path: {path}): {reason}")


class ReloadParseError(MeshConfigError):
    """File content is not a valid mesh config (syntax or schema)."""


# Name used by the loader, which knows nothing about reloads.
MeshConfigParseError = ReloadParseError


class CloseError(MeshConfigError):
    """Releasing the watch subscription failed."""
