"""
Shared test fixtures and configuration.
"""

import textwrap
from pathlib import Path
from typing import Callable

import pytest

from confsnap.adapters.base import ExtractionContext
from confsnap.adapters.mock import MockScriptRunner
from confsnap.adapters.registry_store import JsonFileRegistryStore
from confsnap.core.config.settings import EngineConfig
from confsnap.core.context import HostContext
from confsnap.core.persistence.snapshot import Snapshot, SnapshotManifest
from confsnap.core.services.encryption import Encryptor, KeyReference

PASSPHRASE = "correct horse battery staple"
FAST_KDF = 10_000


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """A fake user profile directory."""
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def registry_store(tmp_path: Path) -> JsonFileRegistryStore:
    return JsonFileRegistryStore(tmp_path / "hive.json")


@pytest.fixture
def host(home: Path, registry_store: JsonFileRegistryStore) -> HostContext:
    """A deterministic host: fixed machine name, curated environment."""
    return HostContext(
        machine_name="WORKSTATION-01",
        hostname="workstation-01.lan",
        environment={
            "USERPROFILE": str(home),
            "HOME": str(home),
            "DEPLOY_ENV": "dev",
        },
        platform="linux",
        user_profile=str(home),
        registry=registry_store,
    )


@pytest.fixture
def mock_runner() -> MockScriptRunner:
    return MockScriptRunner()


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    """Engine settings with a cheap KDF and a local audit ledger."""
    return EngineConfig(
        passphrase=PASSPHRASE,
        kdf_iterations=FAST_KDF,
        audit_path=tmp_path / "audit.ndjson",
        registry_file=tmp_path / "hive.json",
        command_timeout=5,
        max_workers=2,
    )


@pytest.fixture
def write_template(tmp_path: Path) -> Callable[..., Path]:
    """Write dedented YAML to a template file and return its path."""

    def _write(content: str, name: str = "template.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def capture_ctx(tmp_path: Path, host: HostContext, mock_runner: MockScriptRunner) -> ExtractionContext:
    """An extraction context over a fresh, writable, encryption-ready snapshot."""
    key_ref = KeyReference.generate(iterations=FAST_KDF)
    manifest = SnapshotManifest(
        template_name="test",
        machine_name=host.machine_name,
        encryption=key_ref.to_manifest(),
    )
    return ExtractionContext(
        host=host,
        snapshot=Snapshot.create(tmp_path / "snapshot", manifest),
        runner=mock_runner,
        encryptor=Encryptor(PASSPHRASE),
        key_ref=key_ref,
        timeout=5,
    )


@pytest.fixture
def reopen() -> Callable[[ExtractionContext], ExtractionContext]:
    """Seal a capture context's snapshot and return a read-only context over it."""

    def _reopen(ctx: ExtractionContext, passphrase: str = PASSPHRASE) -> ExtractionContext:
        ctx.snapshot.seal()
        snapshot = Snapshot.open(ctx.snapshot.root)
        return ExtractionContext(
            host=ctx.host,
            snapshot=snapshot,
            runner=ctx.runner,
            encryptor=Encryptor(passphrase),
            key_ref=snapshot.key_reference,
            timeout=ctx.timeout,
        )

    return _reopen
