"""
Extractor base — the contract between the orchestrator and item kinds.

An extractor knows how to capture one category of item into a snapshot,
apply it back onto the host, and (where the category supports it)
remove it. The orchestrator never calls an extractor directly; every
call goes through ExtractorSet, which turns results and exceptions into
ItemOutcomes.

Extractors signal "nothing to do" by raising ItemSkipped and real
failures by raising ItemError (or a subclass). They never build
outcomes themselves.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from confsnap.adapters.shell.command import ScriptRunner
from confsnap.core.context import HostContext
from confsnap.core.errors import DecryptionError, EncryptionError, ItemSkipped
from confsnap.core.models.kinds import Category
from confsnap.core.models.template import ItemSpec
from confsnap.core.persistence.snapshot import Snapshot, SnapshotRecord
from confsnap.core.services.encryption import Encryptor, KeyReference, is_envelope

logger = logging.getLogger(__name__)


@dataclass
class StateArtifact:
    """A captured leaf inside a snapshot."""

    category: Category
    item: str
    dynamic_state_path: str
    path: Path                     # absolute path of the leaf
    relative: str = ""             # path relative to the snapshot root
    kind: str = ""                 # file, directory, registry, inventory
    encrypted: bool = False
    checksum_type: str = ""
    checksum: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_record(self) -> SnapshotRecord:
        return SnapshotRecord(
            category=self.category,
            name=self.item,
            dynamic_state_path=self.dynamic_state_path,
            kind=self.kind,
            encrypted=self.encrypted,
            checksum_type=self.checksum_type,
            checksum=self.checksum,
            metadata=self.metadata,
        )


@dataclass
class ApplyResult:
    """What applying or removing an item reported back."""

    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionContext:
    """Everything an extractor needs for one run.

    Built once by the orchestrator and shared by every extractor call,
    including calls on worker threads. ``record`` is the only mutating
    method and takes a lock.
    """

    host: HostContext
    snapshot: Snapshot
    runner: ScriptRunner
    encryptor: Encryptor | None = None
    key_ref: KeyReference | None = None
    timeout: float = 300
    cancel: threading.Event | None = None
    max_workers: int = 4
    missing_prerequisites: frozenset[str] = frozenset()
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def seal(self, data: bytes, encrypt: bool) -> bytes:
        """Encrypt ``data`` when requested."""
        if not encrypt:
            return data
        if self.encryptor is None or self.key_ref is None:
            raise EncryptionError("Item requires encryption but no key is configured for this run")
        return self.encryptor.encrypt(data, self.key_ref)

    def unseal(self, data: bytes, encrypted: bool) -> bytes:
        """Decrypt ``data`` if it was stored encrypted."""
        if not encrypted:
            return data
        if self.encryptor is None or self.key_ref is None:
            raise DecryptionError("Snapshot item is encrypted but the snapshot has no key reference")
        return self.encryptor.decrypt(data, self.key_ref)

    def record(self, artifact: StateArtifact) -> None:
        with self._lock:
            self.snapshot.record(artifact.to_record())

    def script_params(self, item: ItemSpec, **extra: Any) -> dict[str, Any]:
        params = self.host.as_params()
        params.update({"item": item.name, "category": item.category.value})
        params.update(extra)
        return params


class Extractor(ABC):
    """Abstract base for category extractors.

    To add a category:
        1. Subclass Extractor and set ``category``
        2. Implement capture and apply (and remove if it can uninstall)
        3. Register it in ExtractorSet
    """

    category: ClassVar[Category]

    @abstractmethod
    def capture(self, item: ItemSpec, ctx: ExtractionContext) -> StateArtifact:
        """Read the item's live state and write it into the snapshot."""

    @abstractmethod
    def apply(
        self, item: ItemSpec, artifact: StateArtifact | None, ctx: ExtractionContext
    ) -> ApplyResult:
        """Write captured state back onto the host. Must be idempotent."""

    def remove(
        self, item: ItemSpec, artifact: StateArtifact | None, ctx: ExtractionContext
    ) -> ApplyResult:
        raise ItemSkipped(f"{self.category.value} items are not uninstalled")

    def group_key(self, item: ItemSpec) -> str | None:
        """Items with different keys may run in parallel; None means serial."""
        return None

    def locate(self, item: ItemSpec, ctx: ExtractionContext) -> StateArtifact | None:
        """Find the item's leaf in an existing snapshot, if it was captured."""
        if not item.dynamic_state_path:
            return None
        path = ctx.snapshot.artifact_path(self.category, item.dynamic_state_path)
        if not path.exists():
            return None
        record = ctx.snapshot.manifest.record_for(self.category, item.dynamic_state_path)
        if record is not None:
            encrypted = record.encrypted
        elif path.is_file():
            with path.open("rb") as f:
                encrypted = is_envelope(f.read(64))
        else:
            encrypted = item.encrypt
        return StateArtifact(
            category=self.category,
            item=item.name,
            dynamic_state_path=item.dynamic_state_path,
            path=path,
            relative=ctx.snapshot.relative(path),
            kind=record.kind if record else "",
            encrypted=encrypted,
            checksum_type=record.checksum_type if record else "",
            checksum=record.checksum if record else "",
            metadata=dict(record.metadata) if record else {},
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} category={self.category.value!r}>"


# ── Helpers shared by extractors ─────────────────────────────────────


def digest(data: bytes, checksum_type: str = "sha256") -> str:
    return hashlib.new(checksum_type, data).hexdigest()


def write_atomic(path: Path, data: bytes) -> None:
    """Write bytes via a temp file and rename, so readers never see half a file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
