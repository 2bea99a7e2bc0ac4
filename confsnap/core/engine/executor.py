"""
Engine executor — the template execution orchestrator.

One call to ``execute`` is one run: load the template, resolve
inheritance for this host, gate on prerequisites, run the stage hooks
around item processing, dispatch every item to its extractor, and hand
back an ExecutionReport.

Flow:
    load → resolve → prerequisites → stage prereqs → (pre_update)
         → items → stage post_update → stage cleanup → done

Fatal problems found before the run starts (invalid template, strict
resolution errors, snapshot pre-flight) raise. Once resolved, the run
always ends in a report: ``aborted`` when a prerequisite or a prereqs
hook forbids the operation, otherwise ``done``, with item failures
counted but never fatal.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path

from confsnap.adapters.base import ExtractionContext
from confsnap.adapters.dispatch import ExtractorSet
from confsnap.adapters.shell.command import ScriptRunner, ShellScriptRunner
from confsnap.core.config.loader import load_template
from confsnap.core.config.settings import EngineConfig
from confsnap.core.context import HostContext
from confsnap.core.engine.prerequisites import evaluate
from confsnap.core.engine.resolver import resolve
from confsnap.core.engine.stages import run_stage
from confsnap.core.errors import PrerequisiteFailure
from confsnap.core.models.kinds import CATEGORY_ORDER, OperationKind, RunState
from confsnap.core.models.report import EngineWarning, ExecutionReport, ItemOutcome, StageReport
from confsnap.core.models.template import EffectiveTemplate, StageItemSpec, StageName
from confsnap.core.persistence.audit import AuditEntry, AuditWriter
from confsnap.core.persistence.snapshot import Snapshot, SnapshotLock, SnapshotManifest, preflight
from confsnap.core.services.encryption import Encryptor, KeyReference

logger = logging.getLogger(__name__)


def execute(
    template_path: Path | str,
    operation: OperationKind | str,
    snapshot_dir: Path | str,
    host: HostContext,
    *,
    runner: ScriptRunner | None = None,
    config: EngineConfig | None = None,
    cancel: threading.Event | None = None,
    extractors: ExtractorSet | None = None,
    audit: AuditWriter | None = None,
) -> ExecutionReport:
    """Run ``operation`` for the template at ``template_path``.

    Args:
        template_path: Template YAML file.
        operation: backup, restore, sync or uninstall.
        snapshot_dir: Snapshot to create (backup/sync) or read (restore/uninstall).
        host: The machine being operated on.
        runner: Script runner (default: the host shell).
        config: Engine settings (default: built-in defaults).
        cancel: Set to stop the run between items; running commands are killed.
        extractors: Extractor set (default: files, registry, applications).
        audit: Audit ledger (default: ``config.audit_path`` if set).

    Returns:
        ExecutionReport ending in ``done`` or ``aborted``.

    Raises:
        SchemaError: The template is invalid.
        ResolutionError: Resolution failed fatally.
        SnapshotError: Snapshot pre-flight failed or another run holds it.
    """
    config = config or EngineConfig()
    operation = OperationKind.parse(operation)
    snapshot_dir = Path(snapshot_dir)
    runner = runner or ShellScriptRunner(config.shell, default_timeout=config.command_timeout)
    extractors = extractors or ExtractorSet()
    if audit is None and config.audit_path is not None:
        audit = AuditWriter(config.audit_path)

    template = load_template(Path(template_path))
    report = ExecutionReport(
        operation_id=generate_operation_id(),
        operation=operation,
        template=template.metadata.name,
        snapshot=str(snapshot_dir),
    )
    report.advance(RunState.LOADED)
    start = time.monotonic()

    preflight(snapshot_dir, operation)
    lock = SnapshotLock(snapshot_dir)
    lock.acquire()
    encryptor = Encryptor(lambda: config.resolve_passphrase(host.environment))
    try:
        effective, warnings = resolve(
            template,
            host,
            runner,
            validation_level=config.validation_level,
            timeout=config.command_timeout,
            cancel=cancel,
        )
        report.warnings.extend(warnings)
        report.advance(RunState.RESOLVED)

        _run(report, effective, snapshot_dir, host, runner, config, cancel, extractors, encryptor)
    finally:
        encryptor.clear()
        lock.release()
        report.finished_at = datetime.now(UTC).isoformat()
        if audit is not None and report.state.terminal:
            write_audit_entry(report, audit, host, int((time.monotonic() - start) * 1000))

    logger.info(
        "%s %s: %s (%d ok, %d failed, %d skipped)",
        operation.value,
        template.metadata.name,
        report.status,
        report.succeeded,
        report.failed,
        report.skipped,
    )
    return report


def _run(
    report: ExecutionReport,
    effective: EffectiveTemplate,
    snapshot_dir: Path,
    host: HostContext,
    runner: ScriptRunner,
    config: EngineConfig,
    cancel: threading.Event | None,
    extractors: ExtractorSet,
    encryptor: Encryptor,
) -> None:
    operation = report.operation
    timeout = config.command_timeout
    stages = effective.stages

    # Prerequisites
    prereqs = evaluate(effective.prerequisites, host, operation, runner, timeout, cancel)
    report.prerequisites = prereqs
    report.warnings.extend(prereqs.warnings)
    try:
        prereqs.raise_for_blocking()
    except PrerequisiteFailure as e:
        _abort(report, str(e))
        return
    report.advance(RunState.PREREQS_CHECKED)

    # Stage: prereqs
    stage = _stage(report, stages.prereqs, "prereqs", runner, host, timeout, cancel)
    fatal = stage.fatal_failures
    if fatal:
        _abort(report, f"prereqs stage failed: {', '.join(r.name for r in fatal)}")
        return
    _stage_warnings(report, stage, only_nonfatal=True)
    report.advance(RunState.STAGE_PREREQS_RUN)

    # Snapshot: created only now that nothing can abort the run
    if operation.captures:
        key_ref = None
        if any(item.encrypt for item in effective.all_items()):
            key_ref = KeyReference.generate(iterations=config.kdf_iterations)
        manifest = SnapshotManifest(
            template_name=effective.metadata.name,
            template_version=effective.metadata.version,
            operation=operation.value,
            machine_name=host.machine_name,
            encryption=key_ref.to_manifest() if key_ref else None,
        )
        snapshot = Snapshot.create(snapshot_dir, manifest)
    else:
        snapshot = Snapshot.open(snapshot_dir)
        key_ref = snapshot.key_reference

    ctx = ExtractionContext(
        host=host,
        snapshot=snapshot,
        runner=runner,
        encryptor=encryptor,
        key_ref=key_ref,
        timeout=timeout,
        cancel=cancel,
        max_workers=config.max_workers,
        missing_prerequisites=frozenset(prereqs.missing),
    )

    # Stage: pre_update
    stage = _stage(report, stages.pre_update, "pre_update", runner, host, timeout, cancel)
    _stage_warnings(report, stage)

    # Items
    for category in CATEGORY_ORDER:
        items = effective.items(category)
        if not items:
            continue
        for outcome in extractors.process(category, items, operation, ctx):
            report.outcomes.append(outcome)
            _log_outcome(outcome)
            report.warnings.extend(
                EngineWarning(source="item", item=outcome.item, message=w) for w in outcome.warnings
            )
    report.advance(RunState.ITEMS_PROCESSED)

    report.cancelled = ctx.cancelled
    if report.cancelled:
        logger.warning("Run cancelled; skipping post_update")
    else:
        stage = _stage(report, stages.post_update, "post_update", runner, host, timeout, cancel)
        _stage_warnings(report, stage)
        report.advance(RunState.STAGE_POST_RUN)

    # Stage: cleanup (failures are logged only)
    stage = _stage(report, stages.cleanup, "cleanup", runner, host, timeout, cancel)
    for failure in stage.failures:
        logger.warning("Cleanup hook '%s' failed: %s", failure.name, failure.error)
    report.advance(RunState.CLEANED)

    if snapshot.writable:
        snapshot.seal()
    report.advance(RunState.DONE)


def _stage(
    report: ExecutionReport,
    items: list[StageItemSpec],
    name: StageName,
    runner: ScriptRunner,
    host: HostContext,
    timeout: float,
    cancel: threading.Event | None,
) -> StageReport:
    stage = run_stage(items, name, runner, host, timeout, cancel)
    if items:
        report.stages[name] = stage
    return stage


def _stage_warnings(report: ExecutionReport, stage: StageReport, only_nonfatal: bool = False) -> None:
    for failure in stage.failures:
        if only_nonfatal and failure.on_failure == "fail":
            continue
        message = f"{stage.stage} hook failed: {failure.error}"
        logger.warning("%s: %s", failure.name, message)
        report.warnings.append(EngineWarning(source="stage", item=failure.name, message=message))


def _abort(report: ExecutionReport, reason: str) -> None:
    logger.error("Aborting %s: %s", report.operation.value, reason)
    report.abort_reason = reason
    report.advance(RunState.ABORTED)


def _log_outcome(outcome: ItemOutcome) -> None:
    marker = "✓" if outcome.ok else "✗" if outcome.failed else "⊘"
    suffix = f" ({outcome.reason})" if outcome.reason else ""
    logger.info("%s %s:%s → %s%s", marker, outcome.category, outcome.item, outcome.status, suffix)


def write_audit_entry(
    report: ExecutionReport,
    audit_writer: AuditWriter,
    host: HostContext | None = None,
    duration_ms: int = 0,
) -> None:
    """Append the run's summary to the audit ledger."""
    entry = AuditEntry(
        operation_id=report.operation_id,
        operation=report.operation.value,
        template=report.template,
        snapshot=report.snapshot,
        machine_name=host.machine_name if host else "",
        status=report.status,
        items_total=report.total,
        items_succeeded=report.succeeded,
        items_failed=report.failed,
        items_skipped=report.skipped,
        cancelled=report.cancelled,
        duration_ms=duration_ms,
        abort_reason=report.abort_reason,
        errors=[f"{o.category}:{o.item}: {o.reason}" for o in report.outcomes if o.failed],
        warnings=[str(w) for w in report.warnings],
    )
    audit_writer.write(entry)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"
