"""Tests for merged settings and persisted overrides."""

import json
from pathlib import Path

from shark_launcher.local.config import MergedSettings


def test_defaults_are_loaded(tmp_path):
    settings = MergedSettings(overrides_path=tmp_path / "overrides.json")
    assert settings.MCP_SERVER_PORT == 9851
    assert settings.UI_SERVER_PORT == 9853
    assert settings.READINESS_MAX_CHECKS == 20
    assert settings.get("NOT_A_SETTING", "fallback") == "fallback"


def test_only_modifiable_overrides_apply(tmp_path):
    overrides = tmp_path / "overrides.json"
    overrides.write_text(json.dumps({
        "READINESS_MAX_CHECKS": 40,
        "MCP_SERVER_PORT": 1234,
        "UNKNOWN_KEY": True,
    }))
    settings = MergedSettings(overrides_path=overrides)

    assert settings.READINESS_MAX_CHECKS == 40
    assert settings.MCP_SERVER_PORT == 9851
    assert not hasattr(settings, "UNKNOWN_KEY")


def test_malformed_overrides_are_ignored(tmp_path):
    overrides = tmp_path / "overrides.json"
    overrides.write_text("{not json")
    assert MergedSettings(overrides_path=overrides).READINESS_MAX_CHECKS == 20


def test_update_setting_coerces_and_persists(tmp_path):
    overrides = tmp_path / "nested" / "overrides.json"
    settings = MergedSettings(overrides_path=overrides)

    ok, _ = settings.update_setting("TERMINATION_GRACE_PERIOD", "3.5")
    assert ok and settings.TERMINATION_GRACE_PERIOD == 3.5
    ok, _ = settings.update_setting("READINESS_MAX_CHECKS", "30")
    assert ok and settings.READINESS_MAX_CHECKS == 30

    assert json.loads(overrides.read_text()) == {"TERMINATION_GRACE_PERIOD": 3.5, "READINESS_MAX_CHECKS": 30}
    assert MergedSettings(overrides_path=overrides).READINESS_MAX_CHECKS == 30


def test_update_setting_rejects_bad_input(tmp_path):
    settings = MergedSettings(overrides_path=tmp_path / "overrides.json")

    ok, message = settings.update_setting("MCP_SERVER_PORT", "1")
    assert not ok and "not modifiable" in message
    ok, _ = settings.update_setting("READINESS_MAX_CHECKS", "many")
    assert not ok
    assert settings.READINESS_MAX_CHECKS == 20
    assert not (tmp_path / "overrides.json").exists()


def test_path_settings_are_not_modifiable(tmp_path):
    settings = MergedSettings(overrides_path=tmp_path / "overrides.json")
    assert isinstance(settings.PID_FILE_PATH, Path)
    assert "PID_FILE_PATH" not in settings.MODIFIABLE_SETTINGS


def test_settings_fixed_at_import_are_not_modifiable(tmp_path):
    settings = MergedSettings(overrides_path=tmp_path / "overrides.json")
    for key in ("DIAGNOSTICS_RETENTION", "LOG_BUFFER_FLUSH_INTERVAL"):
        ok, message = settings.update_setting(key, "5")
        assert not ok and "not modifiable" in message
    assert settings.DIAGNOSTICS_RETENTION == 500
