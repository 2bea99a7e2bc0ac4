"""
Registry-equivalent stores — hierarchical key/value settings backends.

The registry extractor, registry prerequisites and registry selectors
all read and write through the RegistryStore protocol. Two backends:

    JsonFileRegistryStore   a JSON hive file; works on any OS and is
                            what tests and non-Windows hosts use
    WindowsRegistryStore    the real registry through ``winreg``

Key paths are case-insensitive and accept the usual spellings:
``HKCU:\\Software\\X``, ``HKEY_CURRENT_USER\\Software\\X`` and
``HKCU:/Software/X`` all name the same key.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel

from confsnap.core.errors import ItemError

logger = logging.getLogger(__name__)

RegistryKindName = Literal[
    "string", "expand_string", "dword", "qword", "binary", "multi_string"
]

_HIVE_ALIASES = {
    "HKCU": "HKEY_CURRENT_USER",
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKU": "HKEY_USERS",
    "HKCC": "HKEY_CURRENT_CONFIG",
}


class RegistryValue(BaseModel):
    """One typed value. Binary data is carried as bytes in memory."""

    kind: RegistryKindName = "string"
    data: Any = None

    def to_json(self) -> dict[str, Any]:
        data = self.data
        if self.kind == "binary" and isinstance(data, (bytes, bytearray)):
            data = base64.b64encode(bytes(data)).decode("ascii")
        return {"kind": self.kind, "data": data}

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> RegistryValue:
        kind = raw.get("kind", "string")
        data = raw.get("data")
        if kind == "binary" and isinstance(data, str):
            data = base64.b64decode(data)
        return cls(kind=kind, data=data)

    @classmethod
    def coerce(cls, data: Any, kind: str = "string") -> RegistryValue:
        """Build a value from template ``value_data``, converting to the kind."""
        if kind in ("dword", "qword"):
            data = int(data)
        elif kind == "multi_string":
            data = [str(v) for v in data] if isinstance(data, list) else [str(data)]
        elif kind == "binary":
            data = bytes.fromhex(data) if isinstance(data, str) else bytes(data)
        else:
            data = "" if data is None else str(data)
        return cls(kind=kind, data=data)


def normalize_key_path(path: str) -> str:
    """Canonical ``HKEY_...\\Sub\\Key`` spelling of a key path."""
    text = path.strip().replace("/", "\\")
    text = re.sub(r"\\+", r"\\", text).strip("\\")
    if not text:
        return ""
    head, _, rest = text.partition("\\")
    hive = head.rstrip(":").upper()
    hive = _HIVE_ALIASES.get(hive, hive)
    return f"{hive}\\{rest}" if rest else hive


def _fold(path: str) -> str:
    return normalize_key_path(path).casefold()


class RegistryStore(Protocol):
    """Capability interface over a registry-equivalent backend."""

    def key_exists(self, key_path: str) -> bool: ...

    def read_values(self, key_path: str) -> dict[str, RegistryValue] | None: ...

    def read_value(self, key_path: str, name: str) -> RegistryValue | None: ...

    def set_value(self, key_path: str, name: str, value: RegistryValue) -> None: ...

    def create_key(self, key_path: str) -> None: ...

    def delete_value(self, key_path: str, name: str) -> None: ...

    def delete_key(self, key_path: str) -> None: ...


class JsonFileRegistryStore:
    """Registry-equivalent hive persisted as a JSON document.

    Layout::

        {"keys": {"<folded path>": {"path": "<display path>",
                                    "values": {"<name>": {"kind": .., "data": ..}}}}}

    Writes are atomic (temp file + rename). A missing file is an empty hive.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.RLock()
        self._keys: dict[str, dict[str, Any]] | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ── Persistence ─────────────────────────────────────────────

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._keys is not None:
            return self._keys
        if not self._path.is_file():
            self._keys = {}
            return self._keys
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ItemError(f"Cannot read registry hive {self._path}: {e}") from e
        self._keys = dict(raw.get("keys", {}))
        return self._keys

    def _save(self) -> None:
        keys = self._load()
        content = json.dumps({"keys": keys}, indent=2, ensure_ascii=False) + "\n"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        _fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".hive_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(_fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(self._path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    # ── Reads ───────────────────────────────────────────────────

    def key_exists(self, key_path: str) -> bool:
        folded = _fold(key_path)
        with self._lock:
            keys = self._load()
            if folded in keys:
                return True
            prefix = folded + "\\"
            return any(k.startswith(prefix) for k in keys)

    def read_values(self, key_path: str) -> dict[str, RegistryValue] | None:
        with self._lock:
            if not self.key_exists(key_path):
                return None
            entry = self._load().get(_fold(key_path), {"values": {}})
            return {
                name: RegistryValue.from_json(raw)
                for name, raw in entry.get("values", {}).items()
            }

    def read_value(self, key_path: str, name: str) -> RegistryValue | None:
        values = self.read_values(key_path)
        if values is None:
            return None
        if name in values:
            return values[name]
        for existing, value in values.items():
            if existing.casefold() == name.casefold():
                return value
        return None

    # ── Writes ──────────────────────────────────────────────────

    def create_key(self, key_path: str) -> None:
        with self._lock:
            keys = self._load()
            folded = _fold(key_path)
            if folded not in keys:
                keys[folded] = {"path": normalize_key_path(key_path), "values": {}}
                self._save()

    def set_value(self, key_path: str, name: str, value: RegistryValue) -> None:
        with self._lock:
            keys = self._load()
            folded = _fold(key_path)
            entry = keys.setdefault(
                folded, {"path": normalize_key_path(key_path), "values": {}}
            )
            values = entry.setdefault("values", {})
            for existing in list(values):
                if existing.casefold() == name.casefold() and existing != name:
                    del values[existing]
            values[name] = value.to_json()
            self._save()

    def delete_value(self, key_path: str, name: str) -> None:
        with self._lock:
            entry = self._load().get(_fold(key_path))
            if not entry:
                return
            values = entry.get("values", {})
            for existing in list(values):
                if existing.casefold() == name.casefold():
                    del values[existing]
            self._save()

    def delete_key(self, key_path: str) -> None:
        with self._lock:
            keys = self._load()
            folded = _fold(key_path)
            prefix = folded + "\\"
            doomed = [k for k in keys if k == folded or k.startswith(prefix)]
            for k in doomed:
                del keys[k]
            if doomed:
                self._save()


class WindowsRegistryStore:
    """The Windows registry, through ``winreg``."""

    _KINDS = {
        "string": "REG_SZ",
        "expand_string": "REG_EXPAND_SZ",
        "dword": "REG_DWORD",
        "qword": "REG_QWORD",
        "binary": "REG_BINARY",
        "multi_string": "REG_MULTI_SZ",
    }

    def __init__(self) -> None:
        if sys.platform != "win32":
            raise RuntimeError("WindowsRegistryStore is only available on Windows")
        import winreg

        self._winreg = winreg
        self._codes = {kind: getattr(winreg, const) for kind, const in self._KINDS.items()}
        self._kinds = {code: kind for kind, code in self._codes.items()}

    def _split(self, key_path: str) -> tuple[Any, str]:
        hive, _, sub = normalize_key_path(key_path).partition("\\")
        try:
            return getattr(self._winreg, hive), sub
        except AttributeError as e:
            raise ItemError(f"Unknown registry hive in '{key_path}'") from e

    def key_exists(self, key_path: str) -> bool:
        root, sub = self._split(key_path)
        try:
            self._winreg.OpenKey(root, sub).Close()
            return True
        except OSError:
            return False

    def read_values(self, key_path: str) -> dict[str, RegistryValue] | None:
        root, sub = self._split(key_path)
        try:
            handle = self._winreg.OpenKey(root, sub)
        except OSError:
            return None
        values: dict[str, RegistryValue] = {}
        with handle:
            index = 0
            while True:
                try:
                    name, data, code = self._winreg.EnumValue(handle, index)
                except OSError:
                    break
                values[name] = RegistryValue(kind=self._kinds.get(code, "binary"), data=data)
                index += 1
        return values

    def read_value(self, key_path: str, name: str) -> RegistryValue | None:
        root, sub = self._split(key_path)
        try:
            with self._winreg.OpenKey(root, sub) as handle:
                data, code = self._winreg.QueryValueEx(handle, name)
        except OSError:
            return None
        return RegistryValue(kind=self._kinds.get(code, "binary"), data=data)

    def create_key(self, key_path: str) -> None:
        root, sub = self._split(key_path)
        self._winreg.CreateKey(root, sub).Close()

    def set_value(self, key_path: str, name: str, value: RegistryValue) -> None:
        root, sub = self._split(key_path)
        with self._winreg.CreateKeyEx(root, sub, 0, self._winreg.KEY_SET_VALUE) as handle:
            self._winreg.SetValueEx(handle, name, 0, self._codes[value.kind], value.data)

    def delete_value(self, key_path: str, name: str) -> None:
        root, sub = self._split(key_path)
        try:
            with self._winreg.OpenKey(root, sub, 0, self._winreg.KEY_SET_VALUE) as handle:
                self._winreg.DeleteValue(handle, name)
        except FileNotFoundError:
            pass

    def delete_key(self, key_path: str) -> None:
        root, sub = self._split(key_path)
        self._delete_tree(root, sub)

    def _delete_tree(self, root: Any, sub: str) -> None:
        try:
            handle = self._winreg.OpenKey(root, sub, 0, self._winreg.KEY_ALL_ACCESS)
        except FileNotFoundError:
            return
        with handle:
            while True:
                try:
                    child = self._winreg.EnumKey(handle, 0)
                except OSError:
                    break
                self._delete_tree(root, f"{sub}\\{child}")
        self._winreg.DeleteKey(root, sub)


def default_registry_store(hive_file: Path) -> RegistryStore:
    """The real registry on Windows, a JSON hive everywhere else."""
    if sys.platform == "win32":
        return WindowsRegistryStore()
    logger.debug("Using JSON registry hive at %s", hive_file)
    return JsonFileRegistryStore(hive_file)
