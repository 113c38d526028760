from __future__ import annotations

import time
from pathlib import Path

import pytest

import load
from inlay_plugin.dependencies import InstallState
from inlay_plugin.events import EventHook
from inlay_plugin.inlays import InlayConfiguration
from inlay_plugin.render_process import RendererLaunchError


class _FakeDependencies:
    initial_state = InstallState.HIDDEN

    def __init__(self, config_dir, *, dev_override_dir=None):
        self.config_dir = config_dir
        self.dev_override_dir = dev_override_dir
        self.dependencies_ready = EventHook("dependencies_ready")
        self.next_state = self.initial_state
        self.state = InstallState.UNCHECKED
        self.missing = ()
        self.checks = 0
        self.installs = 0
        self.closed = False

    def check_dependencies(self):
        self.checks += 1
        self.state = self.next_state
        if self.state is InstallState.HIDDEN:
            self.dependencies_ready.emit()
        return self.state

    def install(self):
        self.installs += 1
        self.state = InstallState.INSTALLING
        return True

    def reset(self):
        self.state = InstallState.UNCHECKED

    def progress(self):
        return {}

    def dependency_path_for(self, key):
        return Path(self.config_dir) / "dependencies" / key

    def close(self):
        self.closed = True


class _FakeCompanions:
    def __init__(self, *, check_interval_ticks):
        self.check_interval_ticks = check_interval_ticks
        self.availability_changed = EventHook("availability_changed")
        self.is_available = False
        self.ticks = 0
        self.closed = False

    def tick(self):
        self.ticks += 1

    def close(self):
        self.closed = True


class _FakeRenderer:
    fail_start = False

    def __init__(self, parent_pid, plugin_dir, config_dir, runtime_dir, dependency_path, *, adapter_luid=0):
        self.parent_pid = parent_pid
        self.runtime_dir = runtime_dir
        self.dependency_path = dependency_path
        self.adapter_luid = adapter_luid
        self.crashed = EventHook("renderer_crashed")
        self.is_running = False
        self.starts = 0
        self.stops = 0
        self.ensure_calls = 0
        self.closed = False

    def start(self):
        if self.fail_start:
            raise RendererLaunchError("missing executable")
        self.starts += 1
        self.is_running = True

    def stop(self):
        self.stops += 1
        self.is_running = False

    def close(self):
        self.stop()
        self.closed = True

    def ensure_alive(self):
        self.ensure_calls += 1


class _FakePrefs:
    def __init__(self, plugin_dir, **overrides):
        self.plugin_dir = Path(plugin_dir)
        self.dev_mode = False
        self.use_local_dependencies = False
        self.auto_install_dependencies = False
        self.adapter_luid = 99
        self.companion_check_ticks = 2000
        self.tick_interval_seconds = 0.01
        self.capture_renderer_output = False
        self.renderer_log_retention = 5
        self.inlays = [
            InlayConfiguration(guid="always", url="https://inara.cz"),
            InlayConfiguration(guid="companion", companion_only=True),
        ]
        for key, value in overrides.items():
            setattr(self, key, value)

    def runtime_dir(self):
        return None


def _make_runtime(monkeypatch, tmp_path, *, tick_thread: bool = False, **pref_overrides):
    monkeypatch.setattr(load, "DependencyManager", _FakeDependencies)
    monkeypatch.setattr(load, "CompanionDetector", _FakeCompanions)
    monkeypatch.setattr(load, "RenderProcess", _FakeRenderer)
    if not tick_thread:
        monkeypatch.setattr(load._PluginRuntime, "_start_tick_driver", lambda self: None)
    prefs = _FakePrefs(tmp_path / "plugins" / "EDMCWebOverlay", **pref_overrides)
    runtime = load._PluginRuntime(str(prefs.plugin_dir), prefs, config_dir=tmp_path / "config", parent_pid=321)
    sent: list[dict] = []
    runtime.set_channel(lambda message: sent.append(dict(message)) or True)
    return runtime, sent


def test_start_with_dependencies_present_launches_renderer(monkeypatch, tmp_path):
    runtime, sent = _make_runtime(monkeypatch, tmp_path)

    assert runtime.start() == load.PLUGIN_NAME

    assert runtime.renderer.starts == 1
    assert runtime.renderer.parent_pid == 321
    assert runtime.renderer.adapter_luid == 99
    assert runtime.renderer.runtime_dir == runtime.plugin_dir / load.RUNTIME_DIR_NAME
    assert [(msg["event"], msg["inlay"]["guid"]) for msg in sent] == [("add", "always")]

    runtime.stop()
    assert runtime.renderer.stops == 1
    assert runtime.running is False


def test_missing_dependencies_wait_for_confirmation(monkeypatch, tmp_path):
    monkeypatch.setattr(_FakeDependencies, "initial_state", InstallState.CONFIRM)
    runtime, sent = _make_runtime(monkeypatch, tmp_path)

    runtime.start()

    assert runtime.dependencies.installs == 0
    assert runtime.renderer.starts == 0
    assert sent == []

    assert runtime.install_dependencies() is True
    assert runtime.dependencies.installs == 1


def test_auto_install_starts_download(monkeypatch, tmp_path):
    monkeypatch.setattr(_FakeDependencies, "initial_state", InstallState.CONFIRM)
    runtime, _sent = _make_runtime(monkeypatch, tmp_path, auto_install_dependencies=True)

    runtime.start()

    assert runtime.dependencies.installs == 1
    assert runtime.dependencies.state is InstallState.INSTALLING


def test_tick_rechecks_after_completed_install(monkeypatch, tmp_path):
    monkeypatch.setattr(_FakeDependencies, "initial_state", InstallState.CONFIRM)
    runtime, sent = _make_runtime(monkeypatch, tmp_path, auto_install_dependencies=True)
    runtime.start()

    runtime.tick()
    assert runtime.renderer.ensure_calls == 0
    assert runtime.companions.ticks == 1

    runtime.dependencies.state = InstallState.COMPLETE
    runtime.dependencies.next_state = InstallState.HIDDEN
    runtime.tick()

    assert runtime.renderer.starts == 1
    assert runtime.renderer.ensure_calls == 1
    assert [msg["event"] for msg in sent] == ["add"]


def test_renderer_launch_failure_is_logged_and_retried_on_next_ready(monkeypatch, tmp_path):
    monkeypatch.setattr(_FakeRenderer, "fail_start", True)
    runtime, sent = _make_runtime(monkeypatch, tmp_path)

    runtime.start()

    assert runtime.renderer.starts == 0
    assert sent == []

    runtime.tick()
    assert runtime.renderer.ensure_calls == 0

    monkeypatch.setattr(_FakeRenderer, "fail_start", False)
    runtime.retry_dependencies()
    assert runtime.renderer.starts == 1


def test_availability_and_crash_events_reach_inlays(monkeypatch, tmp_path):
    runtime, sent = _make_runtime(monkeypatch, tmp_path)
    runtime.start()
    sent.clear()

    runtime.companions.availability_changed.emit(True)
    assert [(msg["event"], msg["inlay"]["guid"]) for msg in sent] == [("add", "companion")]

    sent.clear()
    runtime.renderer.crashed.emit()
    assert [msg["event"] for msg in sent] == ["init", "add", "add"]


def test_messages_dropped_without_channel(monkeypatch, tmp_path):
    runtime, _sent = _make_runtime(monkeypatch, tmp_path)
    runtime.set_channel(None)

    runtime.start()

    assert runtime.renderer.starts == 1


def test_repeated_start_stop_is_idempotent(monkeypatch, tmp_path):
    runtime, _sent = _make_runtime(monkeypatch, tmp_path)

    runtime.start()
    runtime.start()
    runtime.stop()
    runtime.stop()
    runtime.start()
    runtime.close()

    assert runtime.renderer.starts == 2
    assert runtime.renderer.closed is True
    assert runtime.dependencies.closed is True
    assert runtime.companions.closed is True


def test_local_dependencies_use_plugin_parent(monkeypatch, tmp_path):
    runtime, _sent = _make_runtime(monkeypatch, tmp_path, use_local_dependencies=True)

    assert runtime.dependencies.dev_override_dir == runtime.plugin_dir.parent


def test_tick_driver_thread_runs_until_stop(monkeypatch, tmp_path):
    runtime, _sent = _make_runtime(monkeypatch, tmp_path, tick_thread=True)
    runtime.start()

    deadline = time.monotonic() + 2.0
    while runtime.companions.ticks == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    thread = runtime._tick_thread
    runtime.stop()

    assert runtime.companions.ticks > 0
    assert thread is not None and thread.name == load.TICK_THREAD_NAME
    assert not thread.is_alive()
    assert runtime._tick_thread is None


def test_plugin_hooks_manage_module_runtime(monkeypatch, tmp_path):
    monkeypatch.setattr(load, "DependencyManager", _FakeDependencies)
    monkeypatch.setattr(load, "CompanionDetector", _FakeCompanions)
    monkeypatch.setattr(load, "RenderProcess", _FakeRenderer)
    monkeypatch.setattr(load._PluginRuntime, "_start_tick_driver", lambda self: None)
    monkeypatch.setattr(load, "Preferences", lambda plugin_dir, dev_mode=False: _FakePrefs(plugin_dir))
    monkeypatch.setattr(load, "_resolve_config_dir", lambda plugin_dir: tmp_path / "config")

    assert load.plugin_start3(str(tmp_path)) == load.PLUGIN_NAME
    assert load.dependency_status()["state"] == InstallState.HIDDEN.value
    sent: list[dict] = []
    load.register_renderer_channel(lambda message: sent.append(message) or True)
    load._plugin.renderer.crashed.emit()
    assert [msg["event"] for msg in sent] == ["init", "add"]

    load.plugin_stop()

    assert load._plugin is None
    assert load.install_dependencies() is False
    assert load.dependency_status() is None
    assert load.companion_available() is False


@pytest.mark.parametrize("raw, expected", [(10, 10), ("debug", 10), ("20", 20), ("nonsense", None), (None, None)])
def test_coerce_level(raw, expected):
    assert load._coerce_level(raw) == expected


def test_prefs_changed_saves_and_reconciles(monkeypatch, tmp_path):
    runtime, sent = _make_runtime(monkeypatch, tmp_path)
    runtime.start()
    sent.clear()
    saved: list[bool] = []
    prefs = runtime._preferences
    prefs.save = lambda: saved.append(True)
    prefs.inlays = [InlayConfiguration(guid="fresh")]
    monkeypatch.setattr(load, "_plugin", runtime)
    monkeypatch.setattr(load, "_preferences", prefs)

    load.prefs_changed("Cmdr", False)

    assert saved == [True]
    assert [(msg["event"], msg["inlay"]["guid"]) for msg in sent] == [("add", "fresh"), ("remove", "always")]
