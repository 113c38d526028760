from __future__ import annotations

import json
from pathlib import Path

import pytest

from inlay_plugin import preferences as prefs
from inlay_plugin.inlays import InlayConfiguration


class DummyConfig:
    """Minimal EDMC config stub with get/set support."""

    def __init__(self, initial: dict[str, object] | None = None) -> None:
        self.store: dict[str, object] = dict(initial or {})

    def get(self, key: str, default: object | None = None) -> object | None:
        return self.store.get(key, default)

    def get_str(self, key: str, default: object | None = None) -> object | None:
        return self.store.get(key, default)

    def get_int(self, key: str, default: object | None = None) -> object | None:
        return self.store.get(key, default)

    def get_bool(self, key: str, default: object | None = None) -> object | None:
        return self.store.get(key, default)

    def set(self, key: str, value: object) -> None:
        self.store[key] = value


def _shadow(path: Path) -> dict[str, object]:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def plugin_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture(autouse=True)
def _no_edmc(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(prefs, "_edmc_config_module", None)
    monkeypatch.setattr(prefs, "EDMC_CONFIG", None)


def test_preferences_save_persists_config_and_shadow(plugin_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = DummyConfig()
    monkeypatch.setattr(prefs, "EDMC_CONFIG", config)

    preferences = prefs.Preferences(plugin_dir, dev_mode=True)
    preferences.auto_install_dependencies = True
    preferences.adapter_luid = 1234
    preferences.inlays = [InlayConfiguration(guid="abc", name="Inara", url="https://inara.cz")]
    preferences.save()

    shadow = _shadow(plugin_dir / prefs.PREFERENCES_FILE)
    assert shadow["auto_install_dependencies"] is True
    assert shadow["adapter_luid"] == 1234
    assert shadow["inlays"][0]["url"] == "https://inara.cz"

    assert config.store[prefs._config_key("auto_install_dependencies")] is True
    assert config.store[prefs._config_key("adapter_luid")] == 1234
    assert json.loads(config.store[prefs._config_key("inlays")])[0]["guid"] == "abc"
    assert config.store[prefs.CONFIG_VERSION_KEY] == prefs.CONFIG_STATE_VERSION


def test_preferences_reload_from_config(plugin_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = DummyConfig()
    monkeypatch.setattr(prefs, "EDMC_CONFIG", config)
    first = prefs.Preferences(plugin_dir)
    first.use_local_dependencies = True
    first.companion_check_ticks = 500
    first.inlays = [InlayConfiguration(guid="abc", companion_only=True)]
    first.save()
    (plugin_dir / prefs.PREFERENCES_FILE).unlink()

    second = prefs.Preferences(plugin_dir)

    assert second.use_local_dependencies is True
    assert second.companion_check_ticks == 500
    assert [inlay.guid for inlay in second.inlays] == ["abc"]
    assert second.inlays[0].companion_only is True


def test_preferences_fall_back_to_shadow_without_edmc(plugin_dir: Path) -> None:
    (plugin_dir / prefs.PREFERENCES_FILE).write_text(
        json.dumps({"tick_interval_seconds": 5, "companion_check_ticks": 1, "renderer_log_retention": "3"}),
        encoding="utf-8",
    )

    preferences = prefs.Preferences(plugin_dir)

    assert preferences.tick_interval_seconds == prefs.TICK_INTERVAL_MAX
    assert preferences.companion_check_ticks == prefs.COMPANION_CHECK_TICKS_MIN
    assert preferences.renderer_log_retention == 3


def test_invalid_shadow_file_keeps_defaults(plugin_dir: Path) -> None:
    (plugin_dir / prefs.PREFERENCES_FILE).write_text("{not json", encoding="utf-8")

    preferences = prefs.Preferences(plugin_dir)

    assert preferences.auto_install_dependencies is False
    assert preferences.inlays == []


def test_runtime_dir_resolves_relative_to_plugin(plugin_dir: Path) -> None:
    preferences = prefs.Preferences(plugin_dir)
    assert preferences.runtime_dir() is None

    preferences.renderer_runtime_dir = "dotnet"
    assert preferences.runtime_dir() == plugin_dir / "dotnet"

    absolute = plugin_dir / "elsewhere"
    preferences.renderer_runtime_dir = str(absolute)
    assert preferences.runtime_dir() == absolute


class _TypedOnlyConfig(DummyConfig):
    """Typed getters that reject a default argument, like some EDMC releases."""

    def get_int(self, key: str) -> object | None:  # type: ignore[override]
        return self.store.get(key)

    def get_bool(self, key: str) -> object | None:  # type: ignore[override]
        return self.store.get(key)


def test_preferences_read_typed_getters_without_default(plugin_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = _TypedOnlyConfig(
        {
            prefs._config_key("adapter_luid"): "77",
            prefs._config_key("auto_install_dependencies"): "yes",
            prefs._config_key("tick_interval_seconds"): "5",
        }
    )
    monkeypatch.setattr(prefs, "EDMC_CONFIG", config)

    preferences = prefs.Preferences(plugin_dir)

    assert preferences.adapter_luid == 77
    assert preferences.auto_install_dependencies is True
    assert preferences.tick_interval_seconds == prefs.TICK_INTERVAL_MAX
    assert preferences.use_local_dependencies is False
