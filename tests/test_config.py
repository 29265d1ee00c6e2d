from __future__ import annotations

import pytest

from campuscal import config


@pytest.fixture()
def isolated_env(monkeypatch, tmp_path):
    for key in config.DEFAULTS:
        monkeypatch.delenv(f"CAMPUSCAL_{key.upper()}", raising=False)
    monkeypatch.delenv("CAMPUSCAL_CONFIG", raising=False)
    monkeypatch.delenv("CAMPUSCAL_DATA_DIR", raising=False)
    monkeypatch.delenv("CAMPUSCAL_DB", raising=False)
    monkeypatch.setenv("CAMPUSCAL_BASE_DIR", str(tmp_path))
    monkeypatch.setattr(config, "settings", config.settings)
    return tmp_path


def test_defaults_apply_without_a_config_file(isolated_env):
    settings = config.load_settings()

    assert settings.default_timezone == "America/Chicago"
    assert settings.max_range.days == 400
    assert settings.database_path == isolated_env / "data" / "campuscal.db"
    assert settings.data_dir.is_dir()


def test_environment_overrides_toml(isolated_env, monkeypatch):
    path = isolated_env / "campuscal.toml"
    path.write_text('events_per_page = 20\ndefault_timezone = "Europe/London"\n')
    monkeypatch.setenv("CAMPUSCAL_EVENTS_PER_PAGE", "75")

    settings = config.load_settings()

    assert settings.events_per_page == 75
    assert settings.default_timezone == "Europe/London"


def test_update_config_file_merges_and_reloads(isolated_env):
    path = isolated_env / "custom.toml"

    updated = config.update_config_file(
        {"max_range_days": "30", "unknown": "ignored"}, path=path
    )
    updated = config.update_config_file({"app_port": 9000}, path=path)

    assert updated.max_range_days == 30
    assert updated.app_port == 9000
    assert "unknown" not in path.read_text()


def test_bad_timezone_is_rejected(isolated_env):
    with pytest.raises(ValueError):
        config.update_config_file(
            {"default_timezone": "Nowhere/Special"}, path=isolated_env / "bad.toml"
        )
