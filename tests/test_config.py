"""Tests for InstallerConfig / ConfigIO."""

import pytest

from extinstaller.config import CONFIG_ENV_VAR, ConfigIO, InstallerConfig, load_config


def test_missing_file_gives_defaults(tmp_path):
    cfg = ConfigIO(tmp_path / "installer.json").load()
    assert cfg == InstallerConfig()
    assert cfg.daemon_port == 3240
    assert cfg.verify_timeout == 1.0


def test_save_then_load(tmp_path):
    path = tmp_path / "data" / "installer.json"
    io = ConfigIO(path)
    io.save(InstallerConfig(bundle_identifier="com.example.ext", manual_bundle_path="/tmp/Ext.systemextension"))
    assert not path.with_suffix(".json.tmp").exists()
    cfg = io.load()
    assert cfg.bundle_identifier == "com.example.ext"
    assert cfg.manual_bundle_path == "/tmp/Ext.systemextension"


def test_invalid_file_raises(tmp_path):
    path = tmp_path / "installer.json"
    path.write_text('{"daemon_port": "not a port"}')
    with pytest.raises(RuntimeError, match="installer.json"):
        ConfigIO(path).load()


def test_env_var_path(tmp_path, monkeypatch):
    path = tmp_path / "env.json"
    path.write_text('{"formula_name": "custom-formula"}')
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
    assert load_config().formula_name == "custom-formula"
