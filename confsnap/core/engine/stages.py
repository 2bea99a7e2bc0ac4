"""
Stage runner — lifecycle hooks around item processing.

Hooks run sequentially in declared order. A failing hook is recorded
and the next one still runs; deciding whether a stage failure matters
is the orchestrator's job (see executor).
"""

from __future__ import annotations

import logging
import re
import threading
import time
from pathlib import Path

from confsnap.adapters.shell.command import ScriptRunner
from confsnap.core.context import HostContext
from confsnap.core.errors import CommandCancelledError, CommandTimeoutError
from confsnap.core.models.report import StageItemResult, StageReport
from confsnap.core.models.template import StageItemSpec, StageName

logger = logging.getLogger(__name__)


def run_stage(
    items: list[StageItemSpec],
    stage: StageName,
    runner: ScriptRunner,
    host: HostContext,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> StageReport:
    """Run every hook of ``stage`` and collect the results.

    The cleanup stage ignores cancellation; other stages stop starting
    new hooks once ``cancel`` is set.
    """
    report = StageReport(stage=stage)
    for spec in items:
        if stage != "cleanup" and cancel is not None and cancel.is_set():
            logger.info("Stage %s: cancelled before '%s'", stage, spec.name)
            break
        result = run_hook(spec, stage, runner, host, timeout, None if stage == "cleanup" else cancel)
        report.results.append(result)
        if result.ok:
            logger.debug("Stage %s: ✓ %s", stage, spec.name)
        else:
            logger.info("Stage %s: ✗ %s — %s", stage, spec.name, result.error)
    return report


def run_hook(
    spec: StageItemSpec,
    stage: StageName,
    runner: ScriptRunner,
    host: HostContext,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> StageItemResult:
    """Run one hook. Never raises."""
    start = time.monotonic()

    def _result(ok: bool, **kwargs) -> StageItemResult:
        return StageItemResult(
            name=spec.name,
            type=spec.type,
            ok=ok,
            on_failure=spec.on_failure,
            duration_ms=int((time.monotonic() - start) * 1000),
            **kwargs,
        )

    try:
        body = _body(spec, host)
    except OSError as e:
        return _result(False, error=f"cannot read script {spec.script}: {e}")

    params = host.as_params()
    params.update(spec.parameters)
    params["stage"] = stage
    try:
        result = runner.run(body, params, timeout=timeout, cancel=cancel)
    except CommandTimeoutError as e:
        return _result(False, error=f"timeout: {e}")
    except CommandCancelledError as e:
        return _result(False, error=str(e))

    if spec.type == "check":
        try:
            found = re.search(spec.expected_output, result.output, re.IGNORECASE | re.MULTILINE)
        except re.error as e:
            return _result(False, exit_code=result.exit_code, output=result.output, error=f"invalid pattern: {e}")
        if found is None:
            return _result(
                False,
                exit_code=result.exit_code,
                output=result.output,
                error=f"output did not match {spec.expected_output!r}",
            )
        return _result(True, exit_code=result.exit_code, output=result.output)

    if not result.ok:
        return _result(
            False,
            exit_code=result.exit_code,
            output=result.output,
            error=(result.stderr or f"exited {result.exit_code}").strip(),
        )
    return _result(True, exit_code=result.exit_code, output=result.output)


def _body(spec: StageItemSpec, host: HostContext) -> str:
    if spec.inline_script:
        return spec.inline_script
    if spec.command:
        return spec.command
    return Path(host.expand(spec.script)).read_text(encoding="utf-8")
