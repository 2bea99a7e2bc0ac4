"""
Application extractor — installed-application inventories.

Capture runs the item's discovery command, feeds its output to the
parse procedure on stdin, and stores the resulting list of
``{Name, Id, Version}`` entries as JSON. Apply drives the install
procedure once per entry and Remove drives the uninstall procedure;
one failing entry never stops the others.

Procedures receive the entry as ``CONFSNAP_PARAM_NAME`` /
``CONFSNAP_PARAM_ID`` / ``CONFSNAP_PARAM_VERSION`` (plus the machine
context) and as a JSON object on stdin.
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
from confsnap.core.errors import (
    CommandCancelledError,
    CommandTimeoutError,
    ItemError,
    ItemSkipped,
)
from confsnap.core.models.kinds import Category
from confsnap.core.models.template import ApplicationItem

logger = logging.getLogger(__name__)

_NAME_KEYS = ("Name", "name", "DisplayName", "displayName", "PackageName")
_ID_KEYS = ("Id", "id", "ID", "PackageIdentifier", "AppId", "ProductCode")
_VERSION_KEYS = ("Version", "version", "DisplayVersion")


class ApplicationExtractor(Extractor):
    """Capture inventories and drive install/uninstall procedures."""

    category = Category.APPLICATIONS

    def group_key(self, item: ApplicationItem) -> str | None:
        return item.package_manager_type.lower()

    # ── Capture ──────────────────────────────────────────────────

    def capture(self, item: ApplicationItem, ctx: ExtractionContext) -> StateArtifact:
        _check_dependencies(item, ctx)
        params = ctx.script_params(item, package_manager_type=item.package_manager_type)

        discovery = ctx.runner.run(
            item.discovery_command, params, timeout=ctx.timeout, cancel=ctx.cancel
        )
        if not discovery.ok:
            raise ItemError(
                f"discovery command failed (exit {discovery.exit_code}): "
                f"{_first_line(discovery.stderr or discovery.output)}"
            )

        text = discovery.output
        if item.parse_procedure:
            parsed = ctx.runner.run(
                item.parse_procedure, params, timeout=ctx.timeout, stdin=text, cancel=ctx.cancel
            )
            if not parsed.ok:
                raise ItemError(
                    f"parse procedure failed (exit {parsed.exit_code}): "
                    f"{_first_line(parsed.stderr or parsed.output)}"
                )
            text = parsed.output

        entries = parse_inventory(text, strict=bool(item.parse_procedure))
        document = {
            "package_manager_type": item.package_manager_type,
            "applications": entries,
        }
        data = json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")
        leaf = ctx.snapshot.artifact_path(self.category, item.dynamic_state_path)
        stored = ctx.seal(data, item.encrypt)
        write_atomic(leaf, stored)

        logger.debug("Discovered %d %s applications for %s", len(entries), item.package_manager_type, item.name)
        return StateArtifact(
            category=self.category,
            item=item.name,
            dynamic_state_path=item.dynamic_state_path,
            path=leaf,
            relative=ctx.snapshot.relative(leaf),
            kind="inventory",
            encrypted=item.encrypt,
            checksum_type="sha256",
            checksum=digest(stored),
            metadata={"count": len(entries), "package_manager_type": item.package_manager_type},
        )

    # ── Apply / Remove ───────────────────────────────────────────

    def apply(
        self, item: ApplicationItem, artifact: StateArtifact | None, ctx: ExtractionContext
    ) -> ApplyResult:
        _check_dependencies(item, ctx)
        if not item.install_procedure:
            raise ItemSkipped("no install procedure")
        return self._drive(item, artifact, ctx, item.install_procedure, "install")

    def remove(
        self, item: ApplicationItem, artifact: StateArtifact | None, ctx: ExtractionContext
    ) -> ApplyResult:
        _check_dependencies(item, ctx)
        if not item.uninstall_procedure:
            raise ItemSkipped("no uninstall procedure")
        return self._drive(item, artifact, ctx, item.uninstall_procedure, "uninstall")

    def _drive(
        self,
        item: ApplicationItem,
        artifact: StateArtifact | None,
        ctx: ExtractionContext,
        procedure: str,
        verb: str,
    ) -> ApplyResult:
        if artifact is None:
            raise ItemSkipped("nothing captured for this item in the snapshot")
        entries = self._load(artifact, ctx)
        if not entries:
            return ApplyResult(details={"entries": [], verb: 0})

        results: list[dict[str, Any]] = []
        for entry in entries:
            if ctx.cancelled:
                raise CommandCancelledError(
                    f"run cancelled after {len(results)} of {len(entries)} entries"
                )
            results.append(self._run_entry(item, entry, ctx, procedure))

        failed = [r for r in results if not r["ok"]]
        details = {"entries": results, verb: len(results) - len(failed)}
        if failed:
            raise ItemError(f"{len(failed)} of {len(results)} entries failed to {verb}", details)
        return ApplyResult(details=details)

    def _run_entry(
        self,
        item: ApplicationItem,
        entry: dict[str, Any],
        ctx: ExtractionContext,
        procedure: str,
    ) -> dict[str, Any]:
        params = ctx.script_params(
            item,
            package_manager_type=item.package_manager_type,
            name=entry.get("Name", ""),
            id=entry.get("Id", ""),
            version=entry.get("Version", ""),
        )
        outcome: dict[str, Any] = {"name": entry.get("Name", ""), "id": entry.get("Id", "")}
        try:
            result = ctx.runner.run(
                procedure, params, timeout=ctx.timeout, stdin=json.dumps(entry), cancel=ctx.cancel
            )
        except CommandTimeoutError as e:
            outcome.update(ok=False, error=f"timeout: {e}")
            return outcome
        outcome.update(ok=result.ok, exit_code=result.exit_code)
        if not result.ok:
            outcome["error"] = _first_line(result.stderr or result.output) or f"exit {result.exit_code}"
        return outcome

    def _load(self, artifact: StateArtifact, ctx: ExtractionContext) -> list[dict[str, Any]]:
        raw = ctx.unseal(artifact.path.read_bytes(), artifact.encrypted)
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ItemError(f"application inventory is not valid JSON: {e}") from e
        if isinstance(document, dict):
            document = document.get("applications", [])
        return [_normalize(e) for e in document]


# ── Inventory parsing ────────────────────────────────────────────────


def parse_inventory(text: str, strict: bool = False) -> list[dict[str, Any]]:
    """Turn procedure output into normalized ``{Name, Id, Version}`` entries.

    JSON lists and objects are accepted (an object with an
    ``applications`` list is unwrapped). Without ``strict``, output that
    is not JSON is read as one application per non-empty line.

    Raises:
        ItemError: In strict mode, if the output is not JSON.
    """
    text = text.strip()
    if not text:
        return []
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        if strict:
            raise ItemError(f"parse procedure output is not JSON: {e}") from e
        return [_normalize(line.strip()) for line in text.splitlines() if line.strip()]

    if isinstance(document, dict):
        nested = document.get("applications", document.get("Applications"))
        document = nested if isinstance(nested, list) else [document]
    if not isinstance(document, list):
        document = [document]
    return [_normalize(entry) for entry in document if entry not in (None, "")]


def _normalize(entry: Any) -> dict[str, Any]:
    if not isinstance(entry, dict):
        text = str(entry)
        return {"Name": text, "Id": text, "Version": ""}
    name = _pick(entry, _NAME_KEYS)
    ident = _pick(entry, _ID_KEYS) or name
    normalized = {k: v for k, v in entry.items() if k not in (*_NAME_KEYS, *_ID_KEYS, *_VERSION_KEYS)}
    normalized.update(Name=name or ident, Id=ident, Version=_pick(entry, _VERSION_KEYS))
    return normalized


def _pick(entry: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


def _check_dependencies(item: ApplicationItem, ctx: ExtractionContext) -> None:
    missing = [d for d in item.dependencies if d in ctx.missing_prerequisites]
    if missing:
        raise ItemSkipped(f"missing dependency: {', '.join(missing)}")


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""
