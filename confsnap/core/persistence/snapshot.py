"""
Snapshot directories — the on-disk artifact of a Backup or Sync run.

Layout::

    <snapshot>/
        manifest.json
        files/<dynamic_state_path>
        registry/<dynamic_state_path>
        applications/<dynamic_state_path>

A snapshot is created fresh by Backup/Sync (the directory must not
exist yet) and only ever read by Restore/Uninstall. Concurrent runs
against the same snapshot are refused through a lock file that lives
beside the directory (``<snapshot>.lock``), so taking the lock never
writes into a snapshot that is being read.
"""

from __future__ import annotations

import json
import logging
import os
import re
import socket
import sys
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from confsnap.core.errors import (
    PathTraversalError,
    SnapshotBusyError,
    SnapshotError,
    SnapshotExistsError,
    SnapshotNotFoundError,
)
from confsnap.core.models.kinds import Category, OperationKind
from confsnap.core.services.encryption import KeyReference

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
LOCK_SUFFIX = ".lock"
FORMAT_VERSION = 1


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class SnapshotRecord(BaseModel):
    """What was captured for one item."""

    category: Category
    name: str
    dynamic_state_path: str
    kind: str = ""                   # file, directory, registry, inventory
    encrypted: bool = False
    checksum_type: str = ""
    checksum: str = ""
    captured_at: str = Field(default_factory=_now_iso)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SnapshotManifest(BaseModel):
    """Traceability record stored at the snapshot root."""

    format_version: int = FORMAT_VERSION
    template_name: str
    template_version: str = ""
    operation: str = OperationKind.BACKUP.value
    created_at: str = Field(default_factory=_now_iso)
    machine_name: str = ""
    encryption: dict[str, Any] | None = None
    items: list[SnapshotRecord] = Field(default_factory=list)

    def record_for(self, category: Category, dynamic_state_path: str) -> SnapshotRecord | None:
        wanted = _norm(dynamic_state_path)
        for record in self.items:
            if record.category == category and _norm(record.dynamic_state_path) == wanted:
                return record
        return None


def _norm(path: str) -> str:
    return path.replace("\\", "/").strip("/").lower()


# ── Paths & locking ──────────────────────────────────────────────────


def validate_path(path: Path, base_dir: Path) -> Path:
    """Resolve ``path`` and ensure it stays under ``base_dir``."""
    resolved = Path(path).resolve()
    base = Path(base_dir).resolve()
    if resolved != base and not resolved.is_relative_to(base):
        raise PathTraversalError(f"Path '{path}' escapes snapshot root '{base_dir}'")
    return resolved


def new_snapshot_path(root: Path, template_name: str, now: datetime | None = None) -> Path:
    """Timestamped directory name for a new snapshot under ``root``."""
    slug = re.sub(r"[^a-z0-9]+", "-", template_name.lower()).strip("-") or "snapshot"
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d-%H%M%S")
    return Path(root) / f"{slug}-{stamp}"


def lock_path_for(snapshot_dir: Path) -> Path:
    snapshot_dir = Path(snapshot_dir)
    return snapshot_dir.with_name(snapshot_dir.name + LOCK_SUFFIX)


class SnapshotLock:
    """Exclusive lock file beside a snapshot directory.

    Usable as a context manager. Acquiring an already-held lock raises
    SnapshotBusyError immediately; there is no waiting. A lock left by a
    process that no longer exists on this host is reclaimed.
    """

    def __init__(self, snapshot_dir: Path):
        self._path = lock_path_for(snapshot_dir)
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = self._create()
        except FileExistsError:
            owner = self._owner()
            if not _is_stale(owner):
                raise SnapshotBusyError(
                    f"Snapshot is in use by another run "
                    f"(pid {owner.get('pid', '?')}, lock file {self._path})"
                ) from None
            logger.warning("Removing stale snapshot lock %s (pid %s is gone)", self._path, owner["pid"])
            self._path.unlink(missing_ok=True)
            try:
                fd = self._create()
            except FileExistsError as e:
                raise SnapshotBusyError(
                    f"Snapshot is in use by another run (lock file {self._path})"
                ) from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps({"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": _now_iso()}))
        self._held = True
        logger.debug("Acquired snapshot lock %s", self._path)

    def _create(self) -> int:
        return os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)

    def _owner(self) -> dict[str, Any]:
        """The lock file's contents, or {} while another run is still writing it."""
        try:
            owner = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return owner if isinstance(owner, dict) else {}

    def release(self) -> None:
        if not self._held:
            return
        self._path.unlink(missing_ok=True)
        self._held = False
        logger.debug("Released snapshot lock %s", self._path)

    def __enter__(self) -> SnapshotLock:
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


def _is_stale(owner: dict[str, Any]) -> bool:
    """Whether a lock was taken on this host by a process that has since exited."""
    pid = owner.get("pid")
    if not isinstance(pid, int) or owner.get("host") != socket.gethostname():
        return False
    if sys.platform == "win32":
        # os.kill(pid, 0) is not a liveness probe on Windows
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return False


def preflight(snapshot_dir: Path, operation: OperationKind) -> None:
    """Check the snapshot directory suits the operation. Touches nothing."""
    snapshot_dir = Path(snapshot_dir)
    if operation.captures:
        if snapshot_dir.exists():
            raise SnapshotExistsError(
                f"Snapshot directory already exists: {snapshot_dir} "
                f"({operation.value} always writes a fresh snapshot)"
            )
        return
    if not snapshot_dir.is_dir():
        raise SnapshotNotFoundError(f"Snapshot directory not found: {snapshot_dir}")
    if not os.access(snapshot_dir, os.R_OK | os.X_OK):
        raise SnapshotNotFoundError(f"Snapshot directory is not readable: {snapshot_dir}")
    if not (snapshot_dir / MANIFEST_FILE).is_file():
        raise SnapshotNotFoundError(f"Not a snapshot (no {MANIFEST_FILE}): {snapshot_dir}")


# ── Snapshot ─────────────────────────────────────────────────────────


class Snapshot:
    """A snapshot directory and its manifest."""

    def __init__(self, root: Path, manifest: SnapshotManifest, writable: bool = False):
        self._root = Path(root)
        self._manifest = manifest
        self._writable = writable

    @classmethod
    def create(cls, root: Path, manifest: SnapshotManifest) -> Snapshot:
        """Create a fresh snapshot directory and write its initial manifest."""
        root = Path(root)
        try:
            root.mkdir(parents=True, exist_ok=False)
        except FileExistsError as e:
            raise SnapshotExistsError(f"Snapshot directory already exists: {root}") from e
        snapshot = cls(root, manifest, writable=True)
        snapshot.save_manifest()
        logger.info("Created snapshot %s", root)
        return snapshot

    @classmethod
    def open(cls, root: Path) -> Snapshot:
        """Open an existing snapshot read-only."""
        root = Path(root)
        preflight(root, OperationKind.RESTORE)
        path = root / MANIFEST_FILE
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            manifest = SnapshotManifest.model_validate(data)
        except (OSError, json.JSONDecodeError) as e:
            raise SnapshotNotFoundError(f"Cannot read {path}: {e}") from e
        except Exception as e:
            raise SnapshotError(f"Invalid snapshot manifest {path}: {e}") from e
        logger.debug("Opened snapshot %s (%d records)", root, len(manifest.items))
        return cls(root, manifest, writable=False)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def manifest(self) -> SnapshotManifest:
        return self._manifest

    @property
    def writable(self) -> bool:
        return self._writable

    @property
    def key_reference(self) -> KeyReference | None:
        if not self._manifest.encryption:
            return None
        return KeyReference.from_manifest(self._manifest.encryption)

    def artifact_path(self, category: Category, dynamic_state_path: str) -> Path:
        """Absolute path for an item's leaf, confined to the snapshot."""
        relative = dynamic_state_path.replace("\\", "/").strip("/")
        base = self._root / category.value
        return validate_path(base / relative, self._root)

    def relative(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self._root.resolve()).as_posix()

    def record(self, record: SnapshotRecord) -> None:
        """Add or replace the manifest entry for an item."""
        self._require_writable()
        items = [
            r
            for r in self._manifest.items
            if not (r.category == record.category and _norm(r.dynamic_state_path) == _norm(record.dynamic_state_path))
        ]
        items.append(record)
        self._manifest.items = items

    def save_manifest(self) -> None:
        """Atomically (re)write manifest.json."""
        self._require_writable()
        content = json.dumps(self._manifest.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        path = self._root / MANIFEST_FILE
        _fd, tmp_path = tempfile.mkstemp(dir=self._root, prefix=".manifest_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(_fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    def seal(self) -> None:
        """Write the final manifest; the snapshot is read-only afterwards."""
        if self._writable:
            self.save_manifest()
            self._writable = False

    def _require_writable(self) -> None:
        if not self._writable:
            raise SnapshotError(f"Snapshot {self._root} is read-only")
