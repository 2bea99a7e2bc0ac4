"""
Prerequisite evaluation — gates checked before any item is touched.

Every prerequisite is evaluated; none short-circuits the rest, so one
run reports every missing dependency at once. Whether a missing
prerequisite blocks the run depends on its ``on_missing`` policy and
the current operation (see PrerequisiteResult.blocks).
"""

from __future__ import annotations

import logging
import re
import threading

from confsnap.adapters.shell.command import ScriptRunner
from confsnap.core.context import HostContext
from confsnap.core.errors import CommandCancelledError, CommandTimeoutError, ItemError
from confsnap.core.models.kinds import OperationKind
from confsnap.core.models.report import EngineWarning, PrerequisiteReport, PrerequisiteResult
from confsnap.core.models.template import PrerequisiteSpec

logger = logging.getLogger(__name__)


def evaluate(
    prereqs: list[PrerequisiteSpec],
    host: HostContext,
    operation: OperationKind,
    runner: ScriptRunner | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> PrerequisiteReport:
    """Check every prerequisite and report which are missing.

    Missing prerequisites that do not block ``operation`` become
    warnings in the report.
    """
    report = PrerequisiteReport(operation=operation)
    for spec in prereqs:
        result = check(spec, host, runner, timeout, cancel)
        report.results.append(result)
        if result.satisfied:
            logger.debug("Prerequisite '%s' satisfied", spec.name)
            continue
        if result.blocks(operation):
            logger.error("Prerequisite '%s' missing (%s): %s", spec.name, spec.on_missing, result.message)
        else:
            report.warnings.append(
                EngineWarning(source="prerequisite", item=spec.name, message=result.message)
            )
            logger.warning("Prerequisite '%s' missing: %s", spec.name, result.message)
    return report


def check(
    spec: PrerequisiteSpec,
    host: HostContext,
    runner: ScriptRunner | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> PrerequisiteResult:
    """Evaluate one prerequisite. Never raises."""
    match spec.type:
        case "registry":
            satisfied, output, message = _check_registry(spec, host)
        case _:
            body = spec.check_command if spec.type == "application" else spec.inline_script
            satisfied, output, message = _check_script(spec, body, host, runner, timeout, cancel)

    return PrerequisiteResult(
        name=spec.name,
        type=spec.type,
        on_missing=spec.on_missing,
        satisfied=satisfied,
        output=output,
        message="" if satisfied else message,
    )


def _check_script(
    spec: PrerequisiteSpec,
    body: str,
    host: HostContext,
    runner: ScriptRunner | None,
    timeout: float | None,
    cancel: threading.Event | None,
) -> tuple[bool, str, str]:
    if runner is None:
        return False, "", "no script runner available"
    try:
        result = runner.run(body, host.as_params(), timeout=timeout, cancel=cancel)
    except (CommandTimeoutError, CommandCancelledError) as e:
        return False, "", str(e)

    output = result.combined
    if spec.type == "application" and result.exit_code == 127:
        return False, output, "command not found"
    if spec.expected_output:
        try:
            found = re.search(spec.expected_output, output, re.IGNORECASE | re.MULTILINE)
        except re.error as e:
            return False, output, f"invalid expected_output pattern: {e}"
        if found is None:
            return False, output, f"output did not match {spec.expected_output!r}"
        return True, output, ""
    if not result.ok:
        return False, output, f"exited {result.exit_code}"
    return True, output, ""


def _check_registry(spec: PrerequisiteSpec, host: HostContext) -> tuple[bool, str, str]:
    store = host.registry
    if store is None:
        return False, "", "no registry store available"
    key_path = host.expand(spec.key_path)
    try:
        if not spec.value_name:
            found = store.key_exists(key_path)
            return found, "", "" if found else f"key not found: {key_path}"
        value = store.read_value(key_path, spec.value_name)
    except (OSError, ItemError) as e:
        return False, "", f"cannot read {key_path}: {e}"

    if value is None:
        return False, "", f"value not found: {key_path}\\{spec.value_name}"
    actual = "" if value.data is None else str(value.data)
    if spec.expected_value is not None and actual != spec.expected_value:
        return False, actual, f"expected {spec.expected_value!r}, found {actual!r}"
    return True, actual, ""
