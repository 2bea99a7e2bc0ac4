"""
Machine selector evaluation — does a section apply to this host?

A list of selectors matches when any one of them matches; an empty list
always matches. Each selector compares a subject taken from the host
(machine name, hostname, an environment variable, a registry value, a
script's output) against a pattern using its operator.

Comparisons fail closed: an unreadable subject, an invalid regex or a
non-numeric operand for a numeric operator is simply "no match".
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any

from confsnap.adapters.shell.command import ScriptRunner
from confsnap.core.context import HostContext
from confsnap.core.errors import (
    CommandCancelledError,
    CommandTimeoutError,
    ItemError,
    RuleExecutionError,
)
from confsnap.core.models.template import MachineSelector, SectionCondition

logger = logging.getLogger(__name__)


def matches(
    selectors: list[MachineSelector],
    host: HostContext,
    runner: ScriptRunner | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> bool:
    """True if ``selectors`` is empty or any selector matches ``host``."""
    if not selectors:
        return True
    return any(evaluate_selector(s, host, runner, timeout, cancel) for s in selectors)


def evaluate_selector(
    selector: MachineSelector,
    host: HostContext,
    runner: ScriptRunner | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> bool:
    """Evaluate one selector against the host."""
    match selector.type:
        case "machine_name":
            subject, pattern = host.machine_name, selector.value
        case "hostname_pattern":
            subject, pattern = host.hostname or host.machine_name, selector.value
        case "environment_variable":
            subject = host.getenv(selector.value)
            if selector.expected_value is None:
                return subject is not None
            pattern = selector.expected_value
        case "registry_value":
            subject = _registry_subject(selector, host)
            pattern = selector.expected_value if selector.expected_value is not None else selector.value
        case "script":
            if runner is None:
                logger.warning("Script selector cannot run without a script runner")
                return False
            try:
                result = runner.run(selector.value, host.as_params(), timeout=timeout, cancel=cancel)
            except (CommandTimeoutError, CommandCancelledError) as e:
                logger.warning("Script selector did not finish: %s", e)
                return False
            if selector.expected_value is None:
                return result.ok
            subject, pattern = result.output, selector.expected_value
        case _:
            logger.warning("Unsupported selector type: %s", selector.type)
            return False

    if subject is None:
        return False
    matched = compare(subject, selector.operator, pattern, selector.case_sensitive)
    logger.debug(
        "Selector %s %s %r → %s", selector.type, selector.operator, pattern, matched
    )
    return matched


def compare(subject: Any, operator: str, pattern: str, case_sensitive: bool = False) -> bool:
    """Apply a selector operator. Never raises."""
    subject = _as_text(subject)
    pattern = "" if pattern is None else str(pattern)

    if operator in ("greater_than", "less_than"):
        try:
            left, right = float(subject), float(pattern)
        except ValueError:
            return False
        return left > right if operator == "greater_than" else left < right

    if operator == "matches":
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(pattern, subject, flags) is not None
        except re.error as e:
            logger.warning("Invalid selector pattern %r: %s", pattern, e)
            return False

    if not case_sensitive:
        subject, pattern = subject.casefold(), pattern.casefold()
    match operator:
        case "equals":
            return subject == pattern
        case "not_equals":
            return subject != pattern
        case "contains":
            return pattern in subject
    return False


def condition_holds(
    condition: SectionCondition,
    host: HostContext,
    runner: ScriptRunner | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> bool:
    """Evaluate a conditional-section predicate.

    Selector-shaped conditions behave like selectors. Check conditions
    run ``check`` and search its output for ``expected_result``.

    Raises:
        RuleExecutionError: If a check cannot run and its ``on_failure``
            is ``fail``.
    """
    if not condition.is_check:
        return evaluate_selector(condition, host, runner, timeout, cancel)

    body = condition.check or condition.value
    error = ""
    output = ""
    if runner is None or not body:
        error = "no check script" if not body else "no script runner"
    else:
        try:
            result = runner.run(body, host.as_params(), timeout=timeout, cancel=cancel)
        except (CommandTimeoutError, CommandCancelledError) as e:
            error = str(e)
        else:
            if result.ok:
                output = result.output
            else:
                error = f"exit {result.exit_code}: {result.stderr or result.output}".strip()

    if error:
        if condition.on_failure == "fail":
            raise RuleExecutionError(f"{condition.type} failed: {error}")
        logger.info("%s did not run cleanly (%s); treating as false", condition.type, error)
        return False

    if not condition.expected_result:
        return True
    flags = 0 if condition.case_sensitive else re.IGNORECASE
    try:
        return re.search(condition.expected_result, output, flags) is not None
    except re.error as e:
        raise RuleExecutionError(
            f"{condition.type}: invalid expected_result pattern {condition.expected_result!r}: {e}"
        ) from e


def combine(results: list[bool], logic: str) -> bool:
    """Fold condition results with ``and`` / ``or`` / ``not`` (none hold)."""
    match logic:
        case "or":
            return any(results)
        case "not":
            return not any(results)
    return all(results)


def _registry_subject(selector: MachineSelector, host: HostContext) -> str | None:
    if host.registry is None:
        return None
    key_path = selector.key_path or selector.value
    if not key_path:
        return None
    try:
        if selector.value_name:
            value = host.registry.read_value(key_path, selector.value_name)
            return None if value is None else _as_text(value.data)
        return key_path if host.registry.key_exists(key_path) else None
    except (OSError, ValueError, ItemError) as e:
        logger.debug("Registry selector could not read %s: %s", key_path, e)
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, list):
        return "\n".join(str(v) for v in value)
    return str(value)
