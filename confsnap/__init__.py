"""confsnap — declarative machine configuration backup and restore."""

__version__ = "0.4.0"
