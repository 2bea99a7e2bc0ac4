"""
Registry extractor — registry-equivalent keys and values.

The snapshot leaf is a JSON document:

    {"key_path": "HKEY_CURRENT_USER\\Software\\X", "type": "key",
     "exists": true, "values": {"Theme": {"kind": "string", "data": "dark"}}}

A key or value that is absent at capture time is stored with
``"exists": false`` so that apply removes it rather than leaving
whatever the host has.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from confsnap.adapters.base import (
    ApplyResult,
    ExtractionContext,
    Extractor,
    StateArtifact,
    digest,
    write_atomic,
)
from confsnap.adapters.registry_store import RegistryStore, RegistryValue, normalize_key_path
from confsnap.core.errors import ItemError, ItemSkipped
from confsnap.core.models.kinds import Category
from confsnap.core.models.template import RegistryItem

logger = logging.getLogger(__name__)


class RegistryExtractor(Extractor):
    """Capture and restore registry-equivalent state."""

    category = Category.REGISTRY

    def capture(self, item: RegistryItem, ctx: ExtractionContext) -> StateArtifact:
        store = _store(ctx)
        key_path = normalize_key_path(ctx.host.expand(item.key_path))
        document: dict[str, Any] = {"key_path": key_path, "type": item.type}

        if item.type == "key":
            values = store.read_values(key_path)
            document["exists"] = values is not None
            document["values"] = {name: v.to_json() for name, v in sorted((values or {}).items())}
        else:
            value = store.read_value(key_path, item.value_name)
            document["value_name"] = item.value_name
            document["exists"] = value is not None
            document["values"] = {item.value_name: value.to_json()} if value is not None else {}

        data = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
        leaf = ctx.snapshot.artifact_path(self.category, item.dynamic_state_path)
        stored = ctx.seal(data, item.encrypt)
        write_atomic(leaf, stored)

        if not document["exists"]:
            logger.debug("Recorded absent %s %s", item.type, key_path)
        return StateArtifact(
            category=self.category,
            item=item.name,
            dynamic_state_path=item.dynamic_state_path,
            path=leaf,
            relative=ctx.snapshot.relative(leaf),
            kind="registry",
            encrypted=item.encrypt,
            checksum_type="sha256",
            checksum=digest(stored),
            metadata={"key_path": key_path, "exists": document["exists"], "values": len(document["values"])},
        )

    def apply(
        self, item: RegistryItem, artifact: StateArtifact | None, ctx: ExtractionContext
    ) -> ApplyResult:
        store = _store(ctx)

        if artifact is None:
            if item.type == "value" and item.value_data is not None:
                return self._apply_default(item, store, ctx)
            raise ItemSkipped("nothing captured for this item in the snapshot")

        raw = ctx.unseal(artifact.path.read_bytes(), artifact.encrypted)
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ItemError(f"registry artifact is not valid JSON: {e}") from e

        key_path = normalize_key_path(document.get("key_path") or ctx.host.expand(item.key_path))
        kind = document.get("type", item.type)

        if not document.get("exists", True):
            return self._apply_absence(kind, key_path, document.get("value_name", item.value_name), store)

        values = {name: RegistryValue.from_json(v) for name, v in document.get("values", {}).items()}
        current = store.read_values(key_path) or {}
        store.create_key(key_path)

        written = unchanged = 0
        for name, value in values.items():
            if _same(current.get(name), value):
                unchanged += 1
                continue
            store.set_value(key_path, name, value)
            written += 1

        return ApplyResult(details={"key_path": key_path, "written": written, "unchanged": unchanged})

    def _apply_default(self, item: RegistryItem, store: RegistryStore, ctx: ExtractionContext) -> ApplyResult:
        key_path = normalize_key_path(ctx.host.expand(item.key_path))
        try:
            value = RegistryValue.coerce(item.value_data, item.value_kind)
        except (TypeError, ValueError) as e:
            raise ItemError(f"value_data cannot be stored as {item.value_kind}: {e}") from e
        if _same(store.read_value(key_path, item.value_name), value):
            return ApplyResult(details={"key_path": key_path, "written": 0, "unchanged": 1, "default": True})
        store.create_key(key_path)
        store.set_value(key_path, item.value_name, value)
        return ApplyResult(
            warnings=["no captured value; wrote the template default"],
            details={"key_path": key_path, "written": 1, "unchanged": 0, "default": True},
        )

    def _apply_absence(
        self, kind: str, key_path: str, value_name: str, store: RegistryStore
    ) -> ApplyResult:
        if kind == "value":
            removed = store.read_value(key_path, value_name) is not None
            if removed:
                store.delete_value(key_path, value_name)
        else:
            removed = store.key_exists(key_path)
            if removed:
                store.delete_key(key_path)
        return ApplyResult(details={"key_path": key_path, "absent": True, "removed": int(removed)})


def _store(ctx: ExtractionContext) -> RegistryStore:
    if ctx.host.registry is None:
        raise ItemError("no registry store is available on this host")
    return ctx.host.registry


def _same(current: RegistryValue | None, wanted: RegistryValue) -> bool:
    return current is not None and current.to_json() == wanted.to_json()
