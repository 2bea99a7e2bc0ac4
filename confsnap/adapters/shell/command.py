"""
Script runner — execute script bodies through the host shell.

The engine never embeds a scripting runtime. Prerequisite checks,
stage hooks, transform rules and application procedures all go through
the ScriptRunner protocol, and this module holds the one production
implementation. Tests substitute MockScriptRunner.

Every call honors a timeout and an optional cancellation event: a
running process is killed as soon as either trips, never awaited to
completion.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from confsnap.core.errors import CommandCancelledError, CommandTimeoutError

logger = logging.getLogger(__name__)

# How often a waiting call re-checks its deadline and cancellation event.
_POLL_INTERVAL = 0.1

_POSIX_SHELL = ["sh", "-c"]
_WINDOWS_SHELL = ["powershell", "-NoProfile", "-NonInteractive", "-Command"]

PARAM_ENV_PREFIX = "CONFSNAP_PARAM_"
PARAMS_ENV = "CONFSNAP_PARAMS"


@dataclass
class CommandResult:
    """What a finished command produced."""

    output: str = ""
    exit_code: int = 0
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def combined(self) -> str:
        """stdout followed by stderr, for pattern checks."""
        if self.stderr:
            return f"{self.output}\n{self.stderr}" if self.output else self.stderr
        return self.output


class ScriptRunner(Protocol):
    """Capability interface for running script bodies.

    Implementations raise CommandTimeoutError when ``timeout`` elapses
    and CommandCancelledError when ``cancel`` is set mid-run. A missing
    executable is reported as a non-zero exit code, not an exception.
    """

    def run(
        self,
        body: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        stdin: str | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult: ...


def default_shell() -> list[str]:
    """Shell prefix for the current platform."""
    return list(_WINDOWS_SHELL if sys.platform == "win32" else _POSIX_SHELL)


def params_to_env(params: dict[str, Any] | None) -> dict[str, str]:
    """Expose parameters as ``CONFSNAP_PARAM_<NAME>`` plus one JSON blob."""
    if not params:
        return {}
    env: dict[str, str] = {PARAMS_ENV: json.dumps(params, default=str)}
    for key, value in params.items():
        name = PARAM_ENV_PREFIX + "".join(c if c.isalnum() else "_" for c in str(key)).upper()
        if isinstance(value, (dict, list)):
            env[name] = json.dumps(value, default=str)
        elif isinstance(value, bool):
            env[name] = "true" if value else "false"
        elif value is None:
            env[name] = ""
        else:
            env[name] = str(value)
    return env


class ShellScriptRunner:
    """Run script bodies with ``sh -c`` (or PowerShell on Windows).

    Args:
        shell: Command prefix the body is appended to.
        default_timeout: Seconds used when a call passes no timeout.
        env: Extra environment variables for every call.
        cwd: Working directory for every call.
    """

    def __init__(
        self,
        shell: list[str] | None = None,
        default_timeout: float = 300,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        self._shell = list(shell) if shell else default_shell()
        self._default_timeout = default_timeout
        self._env = dict(env or {})
        self._cwd = cwd

    @property
    def shell(self) -> list[str]:
        return list(self._shell)

    def run(
        self,
        body: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        stdin: str | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        timeout = self._default_timeout if timeout is None else timeout
        env = os.environ.copy()
        env.update(self._env)
        env.update(params_to_env(params))

        command = self._shell + [body]
        logger.debug("Running script (%d chars, timeout=%ss)", len(body), timeout)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                cwd=self._cwd,
                **_group_kwargs(),
            )
        except OSError as e:
            # Shell itself missing or not executable
            return CommandResult(
                output="",
                exit_code=127,
                stderr=f"Cannot start {self._shell[0]}: {e}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        deadline = start + timeout if timeout and timeout > 0 else None
        pending_input = stdin
        while True:
            wait = _POLL_INTERVAL
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(input=pending_input, timeout=wait)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if cancel is not None and cancel.is_set():
                    _kill(proc)
                    raise CommandCancelledError("Command terminated: run cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    _kill(proc)
                    raise CommandTimeoutError(f"Command timed out after {timeout}s")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return CommandResult(
            output=(stdout or "").strip(),
            exit_code=proc.returncode,
            stderr=(stderr or "").strip(),
            duration_ms=elapsed_ms,
        )


def _group_kwargs() -> dict[str, Any]:
    """Popen arguments that put the shell at the head of its own process group."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill(proc: subprocess.Popen) -> None:
    """Kill a shell and every process it started, then reap it.

    Grandchildren inherit the output pipes, so the pipes are closed
    rather than drained.
    """
    if sys.platform == "win32":
        subprocess.run(
            ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    else:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            # Group already gone
            pass
    if proc.poll() is None:
        proc.kill()
    for stream in (proc.stdin, proc.stdout, proc.stderr):
        if stream is not None:
            stream.close()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)
