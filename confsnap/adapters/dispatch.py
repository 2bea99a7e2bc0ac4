"""
Extractor dispatch — the one place items meet extractors.

ExtractorSet selects the extractor for a category, decides from the
operation and the item's action what to do with it, calls the
extractor, and turns whatever happens into an ItemOutcome. It never
raises for an item-scoped problem: that is what keeps one broken item
from failing the run.

Items of a category are processed in declared order. When the
extractor groups items (applications group by package manager), groups
run on a small thread pool and items within a group stay sequential;
outcomes are still returned in declared order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Literal

from confsnap.adapters.applications import ApplicationExtractor
from confsnap.adapters.base import ExtractionContext, Extractor
from confsnap.adapters.files import FileExtractor
from confsnap.adapters.registry_values import RegistryExtractor
from confsnap.core.errors import (
    CommandCancelledError,
    CommandTimeoutError,
    ConfsnapError,
    DecryptionError,
    ItemError,
    ItemSkipped,
)
from confsnap.core.models.kinds import Category, OperationKind
from confsnap.core.models.report import ItemOutcome
from confsnap.core.models.template import ApplicationItem, ItemSpec

logger = logging.getLogger(__name__)

Step = Literal["capture", "apply", "remove"]


def plan(item: ItemSpec, operation: OperationKind) -> Step | None:
    """What ``operation`` does with ``item``, or None to skip it."""
    match operation:
        case OperationKind.BACKUP:
            return "capture" if item.action in ("backup", "sync") else None
        case OperationKind.SYNC:
            return "capture" if item.action == "sync" else None
        case OperationKind.RESTORE:
            return "apply" if item.applies else None
        case OperationKind.UNINSTALL:
            if isinstance(item, ApplicationItem) and item.applies:
                return "remove"
            return None
    return None


class ExtractorSet:
    """Category → extractor mapping plus the outcome-producing dispatch."""

    def __init__(
        self,
        files: Extractor | None = None,
        registry: Extractor | None = None,
        applications: Extractor | None = None,
    ):
        self._files = files or FileExtractor()
        self._registry = registry or RegistryExtractor()
        self._applications = applications or ApplicationExtractor()

    def get(self, category: Category) -> Extractor:
        match category:
            case Category.FILES:
                return self._files
            case Category.REGISTRY:
                return self._registry
            case Category.APPLICATIONS:
                return self._applications
        raise ValueError(f"Unknown category: {category!r}")

    def process(
        self,
        category: Category,
        items: list[ItemSpec],
        operation: OperationKind,
        ctx: ExtractionContext,
    ) -> list[ItemOutcome]:
        """Run every item of one category; outcomes in declared order."""
        extractor = self.get(category)
        groups: dict[str, list[int]] = {}
        for index, item in enumerate(items):
            key = extractor.group_key(item)
            if key is None:
                groups = {}
                break
            groups.setdefault(key, []).append(index)

        if len(groups) <= 1 or ctx.max_workers <= 1:
            return [self.run_item(item, operation, ctx) for item in items]

        outcomes: dict[int, ItemOutcome] = {}

        def _run_group(indexes: list[int]) -> None:
            for i in indexes:
                outcomes[i] = self.run_item(items[i], operation, ctx)

        workers = min(ctx.max_workers, len(groups))
        logger.debug("Processing %d %s groups on %d workers", len(groups), category.value, workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="confsnap") as pool:
            futures = [pool.submit(_run_group, indexes) for indexes in groups.values()]
            for future in futures:
                future.result()
        return [outcomes[i] for i in range(len(items))]

    def run_item(
        self, item: ItemSpec, operation: OperationKind, ctx: ExtractionContext
    ) -> ItemOutcome:
        """Process one item. Never raises for item-scoped problems."""
        name, category = item.name, item.category.value
        start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        if ctx.cancelled:
            return ItemOutcome.skip(name, category, "cancelled")

        step = plan(item, operation)
        if step is None:
            return ItemOutcome.skip(
                name, category, f"action '{item.action}' is not part of {operation.value}"
            )

        extractor = self.get(item.category)
        try:
            match step:
                case "capture":
                    artifact = extractor.capture(item, ctx)
                    ctx.record(artifact)
                    return ItemOutcome.success(
                        name,
                        category,
                        duration_ms=_elapsed(),
                        artifact=artifact.relative,
                        warnings=list(artifact.warnings),
                        details={"checksum": artifact.checksum, **artifact.metadata},
                    )
                case "apply" | "remove":
                    artifact = extractor.locate(item, ctx)
                    if step == "apply":
                        result = extractor.apply(item, artifact, ctx)
                    else:
                        result = extractor.remove(item, artifact, ctx)
                    return ItemOutcome.success(
                        name,
                        category,
                        duration_ms=_elapsed(),
                        artifact=artifact.relative if artifact else "",
                        warnings=list(result.warnings),
                        details=result.details,
                    )
        except ItemSkipped as e:
            return ItemOutcome.skip(name, category, str(e), duration_ms=_elapsed())
        except CommandCancelledError as e:
            return ItemOutcome.skip(name, category, "cancelled", duration_ms=_elapsed(), details={"error": str(e)})
        except CommandTimeoutError as e:
            return ItemOutcome.failure(name, category, f"timeout: {e}", duration_ms=_elapsed())
        except DecryptionError as e:
            return ItemOutcome.failure(name, category, f"decryption failed: {e}", duration_ms=_elapsed())
        except ItemError as e:
            return ItemOutcome.failure(name, category, str(e), duration_ms=_elapsed(), details=e.details)
        except ConfsnapError as e:
            return ItemOutcome.failure(name, category, str(e), duration_ms=_elapsed())
        except OSError as e:
            return ItemOutcome.failure(name, category, f"I/O error: {e}", duration_ms=_elapsed())
        except Exception as e:
            # Extractors should only raise the errors above
            logger.error("Extractor %s raised during %s of %s: %s", extractor, step, name, e)
            return ItemOutcome.failure(name, category, f"unexpected error: {e}", duration_ms=_elapsed())
        raise AssertionError(f"unhandled step {step!r}")
