"""
Host context — everything the engine knows about the machine it runs on.

A HostContext is built once by the caller and passed explicitly into
every entry point; there is no process-wide singleton. Tests build one
by hand with a fake machine name, a curated environment and a JSON
registry hive.
"""

from __future__ import annotations

import os
import platform
import re
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from confsnap.adapters.registry_store import RegistryStore


# %VAR%  |  $env:VAR  |  ${VAR}  |  $VAR
_VAR_PATTERN = re.compile(
    r"%(?P<pct>[A-Za-z_][A-Za-z0-9_()]*)%"
    r"|\$env:(?P<ps>[A-Za-z_][A-Za-z0-9_]*)"
    r"|\$\{(?P<brace>[A-Za-z_][A-Za-z0-9_]*)\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


@dataclass
class HostContext:
    """Identity, environment and capabilities of the current host."""

    machine_name: str
    hostname: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    platform: str = sys.platform
    user_profile: str = ""
    registry: RegistryStore | None = None

    @classmethod
    def from_environment(cls, registry: RegistryStore | None = None) -> HostContext:
        """Describe the machine this process runs on."""
        hostname = socket.gethostname()
        machine = os.environ.get("COMPUTERNAME") or platform.node() or hostname
        return cls(
            machine_name=machine,
            hostname=hostname,
            environment=dict(os.environ),
            platform=sys.platform,
            user_profile=str(Path.home()),
            registry=registry,
        )

    def getenv(self, name: str) -> str | None:
        """Look up a variable; falls back to a case-insensitive match."""
        if name in self.environment:
            return self.environment[name]
        folded = name.casefold()
        for key, value in self.environment.items():
            if key.casefold() == folded:
                return value
        return None

    def expand(self, text: str) -> str:
        """Expand ``%VAR%``, ``$env:VAR``, ``${VAR}``, ``$VAR`` and a leading ``~``.

        Unknown variables are left as written.
        """

        def _sub(match: re.Match[str]) -> str:
            name = match.group("pct") or match.group("ps") or match.group("brace") or match.group("bare")
            if name.upper() == "USERPROFILE" and self.user_profile and self.getenv(name) is None:
                return self.user_profile
            value = self.getenv(name)
            return match.group(0) if value is None else value

        expanded = _VAR_PATTERN.sub(_sub, text)
        if expanded == "~" or expanded.startswith(("~/", "~\\")):
            home = self.user_profile or self.getenv("HOME") or str(Path.home())
            expanded = home + expanded[1:]
        return expanded

    def as_params(self) -> dict[str, Any]:
        """Machine context handed to scripts."""
        return {
            "machine_name": self.machine_name,
            "hostname": self.hostname,
            "platform": self.platform,
            "user_profile": self.user_profile,
        }
