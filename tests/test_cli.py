"""
Tests for CLI commands — global options, validate, resolve, and operation runs.
"""

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from confsnap import __version__
from confsnap.main import cli

PASSPHRASE = "cli passphrase"


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "back up and restore machine configuration" in result.output
        for command in ("backup", "restore", "sync", "uninstall", "resolve", "validate"):
            assert command in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_settings_file(self, tmp_path: Path):
        template = tmp_path / "t.yml"
        template.write_text("metadata: {name: t}\n")
        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(tmp_path / "absent.yml"), "resolve", str(template)])
        assert result.exit_code == 2
        assert "Settings file not found" in result.output


# ── Validate ─────────────────────────────────────────────────────────


class TestValidateCommand:
    """Tests for the validate command."""

    def _write(self, tmp_path: Path, content: str) -> Path:
        path = tmp_path / "template.yml"
        path.write_text(textwrap.dedent(content))
        return path

    def test_valid(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            metadata: {name: desktop}
            files:
              - {name: a, action: backup, source_path: /etc/a, dynamic_state_path: a}
            machine_specific:
              - selectors: [{type: machine_name, value: WS-1}]
        """)
        result = CliRunner().invoke(cli, ["validate", str(path)])
        assert result.exit_code == 0
        assert "Template is valid" in result.output
        assert "Items: 1" in result.output
        assert "Machine sections: 1" in result.output

    def test_invalid_lists_problems(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            metadata: {name: desktop}
            files:
              - {name: a, action: launch, source_path: /etc/a}
        """)
        result = CliRunner().invoke(cli, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Template errors" in result.output
        assert "files.0.action" in result.output

    def test_json(self, tmp_path: Path):
        path = self._write(tmp_path, "metadata: {name: desktop}\n")
        result = CliRunner().invoke(cli, ["validate", str(path), "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output) == {"valid": True, "name": "desktop", "items": 0}

    def test_json_invalid(self, tmp_path: Path):
        path = self._write(tmp_path, "metadata: {}\n")
        result = CliRunner().invoke(cli, ["validate", str(path), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["valid"] is False
        assert data["problems"]

    def test_template_must_exist(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["validate", str(tmp_path / "absent.yml")])
        assert result.exit_code == 2


# ── Operations ───────────────────────────────────────────────────────


@pytest.fixture
def workspace(tmp_path: Path) -> dict:
    """Settings, a template over two live files, and a snapshot root."""
    live = tmp_path / "live"
    live.mkdir()
    (live / "app.conf").write_text("color=blue\n")
    (live / "api.key").write_text("k-123")

    settings = tmp_path / "confsnap.yml"
    settings.write_text(textwrap.dedent(f"""\
        kdf_iterations: 10000
        command_timeout: 10
        audit_path: {tmp_path / "audit.ndjson"}
        registry_file: {tmp_path / "hive.json"}
    """))

    template = tmp_path / "template.yml"
    template.write_text(textwrap.dedent(f"""\
        metadata:
          name: cli-demo
        prerequisites:
          - type: registry
            name: vendor-key
            key_path: HKCU:/Software/Vendor
            on_missing: {{policy}}
        files:
          - name: app-conf
            action: sync
            source_path: {live / "app.conf"}
            dynamic_state_path: app.conf
          - name: api-key
            action: sync
            source_path: {live / "api.key"}
            encrypt: true
            dynamic_state_path: api.key
        machine_specific:
          - name: build-box
            selectors:
              - {{type: machine_name, value: BUILD-01}}
            files:
              - name: build-only
                action: backup
                source_path: {live / "build.conf"}
                dynamic_state_path: build.conf
    """))
    return {
        "live": live,
        "settings": settings,
        "template_text": template.read_text(),
        "template": template,
        "root": tmp_path / "snapshots",
    }


def _set_policy(workspace: dict, policy: str) -> str:
    workspace["template"].write_text(workspace["template_text"].replace("{policy}", policy))
    return str(workspace["template"])


def _invoke(workspace: dict, *args: str):
    runner = CliRunner()
    return runner.invoke(
        cli,
        ["-c", str(workspace["settings"]), *args],
        env={"CONFSNAP_PASSPHRASE": PASSPHRASE, "CONFSNAP_LOG_LEVEL": "ERROR"},
    )


class TestOperations:
    """backup / restore / uninstall through the CLI."""

    def test_backup_then_restore(self, workspace: dict):
        template = _set_policy(workspace, "warn")
        result = _invoke(workspace, "backup", template, "--into", str(workspace["root"]), "--json")
        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["status"] == "ok"
        assert report["succeeded"] == 2
        snapshot = Path(report["snapshot"])
        assert snapshot.parent == workspace["root"]
        assert snapshot.name.startswith("cli-demo-")
        assert b"k-123" not in (snapshot / "files" / "api.key").read_bytes()

        (workspace["live"] / "app.conf").write_text("color=red\n")
        (workspace["live"] / "api.key").unlink()
        result = _invoke(workspace, "restore", template, str(snapshot))
        assert result.exit_code == 0, result.output
        assert "restore · cli-demo" in result.output
        assert "ok: 2 succeeded, 0 failed, 0 skipped" in result.output
        assert (workspace["live"] / "app.conf").read_text() == "color=blue\n"
        assert (workspace["live"] / "api.key").read_text() == "k-123"

    def test_degraded_run_exits_1(self, workspace: dict):
        template = _set_policy(workspace, "warn")
        (workspace["live"] / "app.conf").unlink()
        (workspace["live"] / "app.conf").mkdir()
        result = _invoke(workspace, "backup", template, "--into", str(workspace["root"]))
        assert result.exit_code == 1
        assert "files/app-conf" in result.output
        assert "degraded: 1 succeeded, 1 failed" in result.output

    def test_aborted_run_exits_2(self, workspace: dict):
        template = _set_policy(workspace, "fail_backup")
        result = _invoke(workspace, "backup", template, "--into", str(workspace["root"]))
        assert result.exit_code == 2
        assert "Aborted" in result.output
        assert "vendor-key" in result.output

    def test_restore_missing_snapshot_is_fatal(self, workspace: dict):
        template = _set_policy(workspace, "warn")
        result = _invoke(workspace, "restore", template, str(workspace["root"] / "nope"))
        assert result.exit_code == 2
        assert "not found" in result.output

    def test_sync_only_captures_sync_items(self, workspace: dict):
        template = _set_policy(workspace, "warn")
        result = _invoke(workspace, "sync", template, "--into", str(workspace["root"]), "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["operation"] == "sync"

    def test_audit_ledger_is_written(self, workspace: dict, tmp_path: Path):
        template = _set_policy(workspace, "warn")
        _invoke(workspace, "backup", template, "--into", str(workspace["root"]))
        lines = (tmp_path / "audit.ndjson").read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["template"] == "cli-demo"


class TestResolveCommand:
    """Tests for the resolve command."""

    def test_text(self, workspace: dict):
        template = _set_policy(workspace, "warn")
        result = _invoke(workspace, "resolve", template, "--machine", "LAPTOP-7")
        assert result.exit_code == 0, result.output
        assert "Machine: LAPTOP-7" in result.output
        assert "Files: 2" in result.output
        assert "app-conf" in result.output

    def test_json_with_machine_override(self, workspace: dict):
        template = _set_policy(workspace, "warn")
        result = _invoke(workspace, "resolve", template, "--machine", "BUILD-01", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        names = {item["name"]: item["origin"] for item in data["files"]}
        assert names == {"app-conf": "template", "api-key": "template", "build-only": "machine"}
        assert isinstance(data["warnings"], list)
