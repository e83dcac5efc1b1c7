"""Test configuration management."""

import json

import pytest

from provswitch.core.config import (
    DEFAULT_PROBE_TIMEOUTS_MS,
    AppType,
    ConfigFormat,
    ConfigManager,
    GlobalConfig,
    ProviderConfig,
    ProviderProfile,
    default_config_path,
    format_for_app,
    probe_timeout_for,
)
from provswitch.core.errors import ProviderNotFoundError


def test_global_config_defaults():
    config = GlobalConfig()
    assert config.providers == {}
    assert config.auto_select
    assert config.warmup_probe


def test_app_type_accepts_aliases():
    """AppType should accept legacy labels and any casing."""
    assert AppType("Claude") == AppType.CLAUDE
    assert AppType("anthropic") == AppType.CLAUDE
    assert AppType("openai") == AppType.CODEX
    assert AppType("gemini-cli") == AppType.GEMINI
    with pytest.raises(ValueError):
        AppType("cursor")


def test_format_is_fixed_per_app():
    assert format_for_app(AppType.CLAUDE) == ConfigFormat.JSON_ENV
    assert format_for_app(AppType.CODEX) == ConfigFormat.TOML_FRAGMENT
    assert format_for_app(AppType.GEMINI) == ConfigFormat.DOTENV_LIKE


def test_profile_rejects_mismatched_format():
    with pytest.raises(ValueError):
        ProviderProfile(
            id="bad",
            app_type=AppType.CODEX,
            config=ProviderConfig(format=ConfigFormat.JSON_ENV),
        )


def test_probe_timeouts():
    assert DEFAULT_PROBE_TIMEOUTS_MS == {"claude": 8000, "codex": 12000, "gemini": 8000}
    assert probe_timeout_for(AppType.CODEX) == 12000
    assert probe_timeout_for(AppType.GEMINI, {"gemini": 3000}) == 3000
    assert probe_timeout_for(AppType.CLAUDE, {"gemini": 3000}) == 8000


def test_default_config_path_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("PROVSWITCH_CONFIG", str(tmp_path / "custom.json"))
    assert default_config_path() == tmp_path / "custom.json"


def test_config_manager_round_trip(manager, profile_factory):
    config = manager.get_global_config()
    assert isinstance(config, GlobalConfig)

    manager.add_provider(profile_factory("relay", AppType.CODEX, 'model = "gpt-5"', auth="{}"))
    manager.add_provider(profile_factory("official"))

    loaded = manager.reload()
    assert set(loaded.providers) == {"relay", "official"}
    assert loaded.providers["relay"].config.settings == 'model = "gpt-5"'
    assert loaded.current == {"codex": "relay", "claude": "official"}


def test_add_provider_refuses_duplicates(manager, profile_factory):
    manager.add_provider(profile_factory("relay"))
    with pytest.raises(ValueError):
        manager.add_provider(profile_factory("relay"))
    manager.add_provider(profile_factory("relay"), overwrite=True)


def test_delete_provider_repairs_current(manager, profile_factory):
    manager.add_provider(profile_factory("first"))
    manager.add_provider(profile_factory("second"))
    assert manager.get_global_config().current["claude"] == "first"

    manager.delete_provider("first")
    assert manager.get_global_config().current["claude"] == "second"

    manager.delete_provider("second")
    assert "claude" not in manager.get_global_config().current

    with pytest.raises(ProviderNotFoundError):
        manager.delete_provider("second")


def test_update_provider_config_keeps_format(manager, profile_factory):
    manager.add_provider(profile_factory("relay"))
    new_config = ProviderConfig(format=ConfigFormat.JSON_ENV, settings='{"env": {}}')
    assert manager.update_provider_config("relay", new_config).config == new_config

    with pytest.raises(ValueError):
        manager.update_provider_config("relay", ProviderConfig(format=ConfigFormat.DOTENV_LIKE))


def test_set_current_checks_app(manager, profile_factory):
    manager.add_provider(profile_factory("a"))
    manager.add_provider(profile_factory("b"))
    manager.set_current(AppType.CLAUDE, "b")
    assert manager.get_global_config().current["claude"] == "b"
    with pytest.raises(ValueError):
        manager.set_current(AppType.GEMINI, "b")


def test_malformed_config_file_falls_back_to_defaults(config_path):
    config_path.write_text("{ not json", encoding="utf-8")
    config = ConfigManager(config_path).get_global_config()
    assert config.providers == {}


def test_saved_file_is_plain_json(manager, profile_factory, config_path):
    manager.add_provider(profile_factory("relay"))
    data = json.loads(config_path.read_text(encoding="utf-8"))
    assert data["providers"]["relay"]["app_type"] == "claude"
    assert data["providers"]["relay"]["config"]["format"] == "json-env"
