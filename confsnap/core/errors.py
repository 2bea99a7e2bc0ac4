"""
Exception hierarchy for confsnap.

Errors fall into three scopes:

    fatal        — SchemaError, ConfigError, Snapshot*Error: abort before
                   any item is touched
    resolution   — RuleExecutionError, MergeConflictError: fatal only
                   under strict validation, otherwise reported as warnings
    item         — ItemError and its subclasses: caught at the extractor
                   dispatch point and recorded in the execution report
"""

from __future__ import annotations

from typing import Any


class ConfsnapError(Exception):
    """Base exception for all confsnap errors."""


# ── Template & configuration ────────────────────────────────────────


class SchemaError(ConfsnapError):
    """The template document is malformed or violates the schema."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class ConfigError(ConfsnapError):
    """Engine configuration is invalid or unreadable."""


# ── Resolution ──────────────────────────────────────────────────────


class ResolutionError(ConfsnapError):
    """Inheritance resolution could not produce an effective template."""


class RuleExecutionError(ResolutionError):
    """An inheritance rule or condition script failed to run."""


class MergeConflictError(ResolutionError):
    """Two items sharing a merge key cannot be merged structurally."""


# ── Prerequisites ───────────────────────────────────────────────────


class PrerequisiteFailure(ConfsnapError):
    """A prerequisite is missing and its policy forbids the operation."""

    def __init__(self, message: str, names: list[str] | None = None):
        super().__init__(message)
        self.names = names or []


# ── Item scope ──────────────────────────────────────────────────────


class ItemError(ConfsnapError):
    """Capture, apply or remove failed for a single item."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


class ItemSkipped(ConfsnapError):
    """Raised by an extractor when an item has nothing to do; not a failure."""


class DecryptionError(ItemError):
    """Ciphertext could not be decrypted (wrong key or corrupt envelope)."""


class CommandTimeoutError(ItemError, TimeoutError):
    """An external command exceeded its timeout."""


class CommandCancelledError(ItemError):
    """An external command was terminated because the run was cancelled."""


class EncryptionError(ConfsnapError):
    """Plaintext could not be encrypted or no key material is available."""


# ── Snapshot pre-flight ─────────────────────────────────────────────


class SnapshotError(ConfsnapError):
    """Base for snapshot directory problems."""


class SnapshotBusyError(SnapshotError):
    """Another run holds the lock for this snapshot directory."""


class SnapshotNotFoundError(SnapshotError):
    """The snapshot directory does not exist or is not readable."""


class SnapshotExistsError(SnapshotError):
    """Backup/Sync target directory already exists."""


class PathTraversalError(SnapshotError):
    """A dynamic state path escapes the snapshot root."""
