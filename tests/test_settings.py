"""
Tests for engine settings — file, environment and override precedence.
"""

from pathlib import Path

import pytest

from confsnap.core.config.settings import EngineConfig, get_config_dir, load_engine_config
from confsnap.core.errors import ConfigError


class TestLoadEngineConfig:
    def test_defaults(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        config = load_engine_config(environ={})
        assert config.command_timeout == 300
        assert config.max_workers == 4
        assert config.kdf_iterations == 480_000
        assert config.validation_level is None
        assert config.audit_path is None

    def test_file_values(self, tmp_path: Path):
        path = tmp_path / "confsnap.yml"
        path.write_text("command_timeout: 60\nmax_workers: 2\nshell: bash -c\n")
        config = load_engine_config(path, environ={})
        assert config.command_timeout == 60
        assert config.max_workers == 2
        assert config.shell == ["bash", "-c"]

    def test_env_beats_file(self, tmp_path: Path):
        path = tmp_path / "confsnap.yml"
        path.write_text("command_timeout: 60\n")
        config = load_engine_config(
            path,
            environ={"CONFSNAP_COMMAND_TIMEOUT": "15", "CONFSNAP_AUDIT_FILE": str(tmp_path / "a.ndjson")},
        )
        assert config.command_timeout == 15
        assert config.audit_path == tmp_path / "a.ndjson"

    def test_overrides_beat_env(self):
        config = load_engine_config(
            environ={"CONFSNAP_MAX_WORKERS": "8"}, max_workers=1, validation_level=None
        )
        assert config.max_workers == 1

    def test_env_shell_is_split(self):
        config = load_engine_config(environ={"CONFSNAP_SHELL": "pwsh -NoProfile -Command"})
        assert config.shell == ["pwsh", "-NoProfile", "-Command"]

    def test_config_dir_file_is_used(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        monkeypatch.setattr("sys.platform", "linux")
        (tmp_path / "confsnap").mkdir()
        (tmp_path / "confsnap" / "confsnap.yml").write_text("validation_level: strict\n")
        assert load_engine_config(environ={}).validation_level == "strict"

    def test_missing_explicit_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_engine_config(tmp_path / "absent.yml", environ={})

    def test_non_mapping(self, tmp_path: Path):
        path = tmp_path / "confsnap.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_engine_config(path, environ={})

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "confsnap.yml"
        path.write_text("key: [unclosed\n")
        with pytest.raises(ConfigError, match="Cannot read settings"):
            load_engine_config(path, environ={})

    def test_invalid_value(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid engine settings"):
            load_engine_config(environ={"CONFSNAP_KDF_ITERATIONS": "10"})


class TestPassphrase:
    def test_explicit_wins(self):
        config = EngineConfig(passphrase="explicit")
        assert config.resolve_passphrase({"CONFSNAP_PASSPHRASE": "env"}) == "explicit"

    def test_from_environment(self):
        assert EngineConfig().resolve_passphrase({"CONFSNAP_PASSPHRASE": "env"}) == "env"

    def test_custom_variable(self):
        config = EngineConfig(passphrase_env="MY_KEY")
        assert config.resolve_passphrase({"MY_KEY": "mine", "CONFSNAP_PASSPHRASE": "other"}) == "mine"

    def test_empty_is_none(self):
        assert EngineConfig().resolve_passphrase({"CONFSNAP_PASSPHRASE": ""}) is None

    def test_passphrase_not_in_repr(self):
        assert "hidden" not in repr(EngineConfig(passphrase="hidden"))


class TestConfigDir:
    def test_xdg(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr("sys.platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_config_dir() == tmp_path / "confsnap"

    def test_windows_appdata(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr("sys.platform", "win32")
        monkeypatch.setenv("APPDATA", str(tmp_path))
        assert get_config_dir() == tmp_path / "confsnap"
