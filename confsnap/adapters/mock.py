"""
Mock script runner — universal test double for external commands.

Used to simulate discovery commands, install procedures, checks and
transform scripts without touching a shell. Responses are matched by
substring against the script body; the most recently registered match
wins. Unmatched scripts succeed with empty output.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from confsnap.adapters.shell.command import CommandResult
from confsnap.core.errors import CommandTimeoutError


@dataclass
class MockCall:
    """One recorded invocation."""

    body: str
    params: dict[str, Any] = field(default_factory=dict)
    stdin: str | None = None
    timeout: float | None = None


Responder = Callable[[MockCall], CommandResult]


class MockScriptRunner:
    """Scriptable ScriptRunner for tests.

    By default every script succeeds with empty output. Configure with
    ``respond`` (fixed output), ``respond_with`` (callable), ``fail``
    (non-zero exit) or ``time_out`` (raises CommandTimeoutError).
    """

    def __init__(self, default_output: str = "", default_exit_code: int = 0):
        self._default = CommandResult(output=default_output, exit_code=default_exit_code)
        self._rules: list[tuple[str, Responder]] = []
        self._call_log: list[MockCall] = []
        self._lock = threading.Lock()

    @property
    def call_log(self) -> list[MockCall]:
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls_matching(self, needle: str) -> list[MockCall]:
        return [c for c in self._call_log if needle in c.body]

    def respond(self, needle: str, output: str = "", exit_code: int = 0, stderr: str = "") -> None:
        """Return a fixed result for scripts containing ``needle``."""
        result = CommandResult(output=output, exit_code=exit_code, stderr=stderr)
        self.respond_with(needle, lambda _call: result)

    def respond_with(self, needle: str, responder: Responder) -> None:
        """Compute the result from the call for scripts containing ``needle``."""
        with self._lock:
            self._rules.append((needle, responder))

    def fail(self, needle: str, stderr: str = "mock failure", exit_code: int = 1) -> None:
        self.respond(needle, exit_code=exit_code, stderr=stderr)

    def time_out(self, needle: str) -> None:
        def _raise(call: MockCall) -> CommandResult:
            raise CommandTimeoutError(f"Command timed out after {call.timeout}s")

        self.respond_with(needle, _raise)

    def run(
        self,
        body: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        stdin: str | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        call = MockCall(body=body, params=dict(params or {}), stdin=stdin, timeout=timeout)
        with self._lock:
            self._call_log.append(call)
            rules = list(reversed(self._rules))

        for needle, responder in rules:
            if needle in body:
                return responder(call)
        return CommandResult(
            output=self._default.output,
            exit_code=self._default.exit_code,
        )

    def reset(self) -> None:
        """Clear call log and configured responses."""
        with self._lock:
            self._call_log.clear()
            self._rules.clear()
