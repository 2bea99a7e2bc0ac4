"""
Engine settings — explicit configuration for one orchestrator run.

Settings resolve in precedence order:
    explicit keyword overrides  >  CONFSNAP_* env vars  >  confsnap.yml  >  defaults

The resulting EngineConfig is passed into every entry point; nothing
reads settings from module globals.
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from confsnap.core.errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "confsnap"
SETTINGS_FILE = "confsnap.yml"

# env var → EngineConfig field
_ENV_FIELDS = {
    "CONFSNAP_COMMAND_TIMEOUT": "command_timeout",
    "CONFSNAP_MAX_WORKERS": "max_workers",
    "CONFSNAP_KDF_ITERATIONS": "kdf_iterations",
    "CONFSNAP_VALIDATION_LEVEL": "validation_level",
    "CONFSNAP_AUDIT_FILE": "audit_path",
    "CONFSNAP_REGISTRY_FILE": "registry_file",
    "CONFSNAP_SHELL": "shell",
}


def get_config_dir() -> Path:
    """Platform-specific configuration directory (not created)."""
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    else:
        xdg = os.getenv("XDG_CONFIG_HOME")
        base = Path(xdg) if xdg else Path.home() / ".config"
    return base / APP_NAME


class EngineConfig(BaseModel):
    """Knobs for one run. Defaults suit unattended execution."""

    command_timeout: float = Field(default=300, gt=0)
    max_workers: int = Field(default=4, ge=1, le=32)
    passphrase_env: str = "CONFSNAP_PASSPHRASE"
    passphrase: str | None = Field(default=None, repr=False)
    kdf_iterations: int = Field(default=480_000, ge=10_000)
    validation_level: Literal["strict", "moderate", "relaxed"] | None = None
    audit_path: Path | None = None
    registry_file: Path = Field(default_factory=lambda: get_config_dir() / "registry.json")
    shell: list[str] | None = None

    def resolve_passphrase(self, environment: dict[str, str] | None = None) -> str | None:
        """The explicit passphrase, else the one named by ``passphrase_env``."""
        if self.passphrase:
            return self.passphrase
        env = os.environ if environment is None else environment
        return env.get(self.passphrase_env) or None


def load_engine_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> EngineConfig:
    """Build an EngineConfig from file, environment and overrides.

    Args:
        path: Optional settings YAML. A missing explicit path is an error;
            with no path, ``<config dir>/confsnap.yml`` is used if present.
        environ: Environment to read ``CONFSNAP_*`` from (default: os.environ).
        **overrides: Field values that win over everything else.

    Raises:
        ConfigError: If the file or any value is invalid.
    """
    data: dict[str, Any] = {}

    if path is None:
        candidate = get_config_dir() / SETTINGS_FILE
        path = candidate if candidate.is_file() else None
    elif not Path(path).is_file():
        raise ConfigError(f"Settings file not found: {path}")

    if path is not None:
        try:
            loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read settings {path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(loaded).__name__}")
        data.update(loaded or {})
        logger.debug("Loaded engine settings from %s", path)

    env = os.environ if environ is None else environ
    for var, field_name in _ENV_FIELDS.items():
        value = env.get(var)
        if not value:
            continue
        data[field_name] = shlex.split(value) if field_name == "shell" else value

    if isinstance(data.get("shell"), str):
        data["shell"] = shlex.split(data["shell"])

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine settings: {e}") from e
