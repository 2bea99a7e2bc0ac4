"""
File extractor — files and directory trees.

A ``file`` item is copied byte-for-byte to its snapshot leaf. A
``directory`` item becomes a directory leaf holding every selected file
under its relative path, plus ``.confsnap_manifest.json`` listing each
relative path with its checksum. Encrypted items encrypt each file
separately; the inner manifest stays readable. Checksums always cover
the stored bytes, so an encrypted leaf never records a digest of its
plaintext.

Apply writes to ``destination`` when set, else back to ``source_path``,
and skips files whose current content already matches.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from pathlib import Path

from confsnap.adapters.base import (
    ApplyResult,
    ExtractionContext,
    Extractor,
    StateArtifact,
    digest,
    write_atomic,
)
from confsnap.core.errors import ItemError, ItemSkipped
from confsnap.core.models.kinds import Category
from confsnap.core.models.template import FileItem

logger = logging.getLogger(__name__)

DIRECTORY_MANIFEST = ".confsnap_manifest.json"


class FileExtractor(Extractor):
    """Capture and restore files and directories."""

    category = Category.FILES

    # ── Capture ──────────────────────────────────────────────────

    def capture(self, item: FileItem, ctx: ExtractionContext) -> StateArtifact:
        source = Path(ctx.host.expand(item.source_path))
        if not source.exists():
            raise ItemSkipped(f"source path not found: {source}")

        leaf = ctx.snapshot.artifact_path(self.category, item.dynamic_state_path)
        artifact = StateArtifact(
            category=self.category,
            item=item.name,
            dynamic_state_path=item.dynamic_state_path,
            path=leaf,
            kind=item.type,
            encrypted=item.encrypt,
            checksum_type=item.checksum_type,
        )

        if item.type == "file":
            if not source.is_file():
                raise ItemError(f"expected a file but {source} is a directory")
            data = source.read_bytes()
            stored = ctx.seal(data, item.encrypt)
            write_atomic(leaf, stored)
            artifact.checksum = digest(stored, item.checksum_type)
            artifact.metadata = {"size": len(data)}
        else:
            if not source.is_dir():
                raise ItemError(f"expected a directory but {source} is a file")
            self._capture_tree(item, source, leaf, artifact, ctx)

        artifact.relative = ctx.snapshot.relative(leaf)
        logger.debug("Captured %s → %s", source, artifact.relative)
        return artifact

    def _capture_tree(
        self,
        item: FileItem,
        source: Path,
        leaf: Path,
        artifact: StateArtifact,
        ctx: ExtractionContext,
    ) -> None:
        checksums: dict[str, str] = {}
        excluded = 0
        leaf.mkdir(parents=True, exist_ok=True)

        for path in sorted(source.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(source).as_posix()
            if not selected(relative, item.exclude_patterns, item.filter):
                excluded += 1
                continue
            try:
                data = path.read_bytes()
            except OSError as e:
                artifact.warnings.append(f"unreadable, not captured: {relative} ({e})")
                continue
            stored = ctx.seal(data, item.encrypt)
            write_atomic(leaf / relative, stored)
            checksums[relative] = digest(stored, item.checksum_type)

        inner = {
            "checksum_type": item.checksum_type,
            "encrypted": item.encrypt,
            "files": checksums,
        }
        write_atomic(leaf / DIRECTORY_MANIFEST, json.dumps(inner, indent=2, sort_keys=True).encode("utf-8"))

        listing = "\n".join(f"{rel}:{checksums[rel]}" for rel in sorted(checksums))
        artifact.checksum = digest(listing.encode("utf-8"), item.checksum_type)
        artifact.metadata = {"files": len(checksums), "excluded": excluded}

    # ── Apply ────────────────────────────────────────────────────

    def apply(
        self, item: FileItem, artifact: StateArtifact | None, ctx: ExtractionContext
    ) -> ApplyResult:
        if artifact is None:
            raise ItemSkipped("nothing captured for this item in the snapshot")

        target = Path(ctx.host.expand(item.destination or item.source_path))
        result = ApplyResult()

        if artifact.path.is_file():
            expected = artifact.checksum
            checksum_type = artifact.checksum_type or item.checksum_type
            stored = artifact.path.read_bytes()
            self._verify(item, target.name, stored, expected, checksum_type, result)
            data = ctx.unseal(stored, artifact.encrypted)
            written = _write_if_changed(target, data)
            result.details = {"target": str(target), "written": int(written), "unchanged": int(not written)}
            return result

        inner_path = artifact.path / DIRECTORY_MANIFEST
        if not inner_path.is_file():
            raise ItemError(f"directory leaf has no {DIRECTORY_MANIFEST}: {artifact.relative}")
        try:
            inner = json.loads(inner_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ItemError(f"unreadable {DIRECTORY_MANIFEST}: {e}") from e

        checksum_type = inner.get("checksum_type") or item.checksum_type
        encrypted = bool(inner.get("encrypted", artifact.encrypted))
        written = unchanged = 0
        target.mkdir(parents=True, exist_ok=True)
        for relative, expected in sorted(inner.get("files", {}).items()):
            stored = artifact.path / relative
            if not stored.is_file():
                message = f"listed in manifest but missing from snapshot: {relative}"
                if item.verify_checksum:
                    raise ItemError(message)
                result.warnings.append(message)
                continue
            raw = stored.read_bytes()
            self._verify(item, relative, raw, expected, checksum_type, result)
            data = ctx.unseal(raw, encrypted)
            if _write_if_changed(target / relative, data):
                written += 1
            else:
                unchanged += 1

        result.details = {"target": str(target), "written": written, "unchanged": unchanged}
        return result

    def _verify(
        self,
        item: FileItem,
        label: str,
        data: bytes,
        expected: str,
        checksum_type: str,
        result: ApplyResult,
    ) -> None:
        if not expected:
            return
        actual = digest(data, checksum_type)
        if actual == expected:
            return
        message = f"checksum mismatch for {label} ({checksum_type} {actual[:12]}… != {expected[:12]}…)"
        if item.verify_checksum:
            raise ItemError(message)
        result.warnings.append(message)


def selected(relative: str, exclude_patterns: list[str], include: str = "") -> bool:
    """Whether a file at ``relative`` (POSIX) survives the item's filters."""
    name = relative.rsplit("/", 1)[-1]
    for pattern in exclude_patterns:
        if fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(name, pattern):
            return False
        # A bare directory name excludes everything below it.
        if f"/{pattern.strip('/')}/" in f"/{relative}":
            return False
    if include and include not in ("*", "*.*"):
        return fnmatch.fnmatch(name, include)
    return True


def _write_if_changed(target: Path, data: bytes) -> bool:
    if target.is_file() and target.read_bytes() == data:
        return False
    write_atomic(target, data)
    return True
