"""Live-reloading mesh configuration cache."""

__version__ = "0.1.0"
