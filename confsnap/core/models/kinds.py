"""
Closed enumerations shared across the engine.

Category is the tagged-variant discriminator for items: every item
belongs to exactly one category, and extractors are selected by it
at a single dispatch point.
"""

from __future__ import annotations

from enum import Enum


class Category(str, Enum):
    """Item category — also the top-level directory inside a snapshot."""

    FILES = "files"
    REGISTRY = "registry"
    APPLICATIONS = "applications"


# Processing order: files first, then registry, then applications.
CATEGORY_ORDER: tuple[Category, ...] = (
    Category.FILES,
    Category.REGISTRY,
    Category.APPLICATIONS,
)


class OperationKind(str, Enum):
    """What a run does with the effective template."""

    BACKUP = "backup"
    RESTORE = "restore"
    SYNC = "sync"
    UNINSTALL = "uninstall"

    @property
    def captures(self) -> bool:
        """Whether this operation writes a fresh snapshot."""
        return self in (OperationKind.BACKUP, OperationKind.SYNC)

    @classmethod
    def parse(cls, value: str | OperationKind) -> OperationKind:
        if isinstance(value, OperationKind):
            return value
        return cls(value.strip().lower())


class RunState(str, Enum):
    """Orchestrator state machine."""

    LOADED = "loaded"
    RESOLVED = "resolved"
    PREREQS_CHECKED = "prereqs_checked"
    STAGE_PREREQS_RUN = "stage_prereqs_run"
    ITEMS_PROCESSED = "items_processed"
    STAGE_POST_RUN = "stage_post_run"
    CLEANED = "cleaned"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunState.DONE, RunState.ABORTED)
