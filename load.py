"""EDMC entry point for the Web Overlay plugin."""
from __future__ import annotations

import importlib
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

if __package__:
    from .version import __version__ as WEB_OVERLAY_VERSION, DEV_MODE_ENV_VAR, PRODUCT_NAME, is_dev_build
    from .inlay_plugin.companion_detector import CompanionDetector
    from .inlay_plugin.dependencies import DependencyManager, InstallState
    from .inlay_plugin.inlays import InlayCoordinator
    from .inlay_plugin.logging_utils import build_rotating_handler, detach_handlers, resolve_logs_dir
    from .inlay_plugin.preferences import Preferences
    from .inlay_plugin.render_process import LOGGER as RENDERER_LOGGER, RenderProcess, RendererLaunchError
else:  # pragma: no cover - EDMC loads as top-level module
    from version import __version__ as WEB_OVERLAY_VERSION, DEV_MODE_ENV_VAR, PRODUCT_NAME, is_dev_build
    from inlay_plugin.companion_detector import CompanionDetector
    from inlay_plugin.dependencies import DependencyManager, InstallState
    from inlay_plugin.inlays import InlayCoordinator
    from inlay_plugin.logging_utils import build_rotating_handler, detach_handlers, resolve_logs_dir
    from inlay_plugin.preferences import Preferences
    from inlay_plugin.render_process import LOGGER as RENDERER_LOGGER, RenderProcess, RendererLaunchError

PLUGIN_NAME = PRODUCT_NAME
PLUGIN_VERSION = WEB_OVERLAY_VERSION
DEV_BUILD = is_dev_build(WEB_OVERLAY_VERSION)
LOGGER_NAME = PLUGIN_NAME
LOG_TAG = PLUGIN_NAME
RUNTIME_DIR_NAME = "runtime"
TICK_THREAD_NAME = "WebOverlayTick"
TICK_JOIN_TIMEOUT = 2.0

EDMC_DEFAULT_LOG_LEVEL = logging.DEBUG if DEV_BUILD else logging.INFO


# Logging bridge -------------------------------------------------------------


def _load_edmc_config_module() -> Optional[Any]:
    try:
        return importlib.import_module("config")
    except Exception:
        return None


def _edmc_loggers() -> Tuple[Optional[logging.Logger], Optional[Callable[[str], None]]]:
    module = _load_edmc_config_module()
    if module is None:
        return None, None
    logger_obj = getattr(module, "logger", None)
    legacy_log = getattr(getattr(module, "config", None), "log", None)
    return (
        logger_obj if isinstance(logger_obj, logging.Logger) else None,
        legacy_log if callable(legacy_log) else None,
    )


def _coerce_level(raw: Any) -> Optional[int]:
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        token = raw.strip().upper()
        if token.isdigit():
            return int(token)
        level = logging.getLevelName(token)
        return level if isinstance(level, int) else None
    return None


def _resolve_edmc_log_level() -> int:
    module = _load_edmc_config_module()
    if module is not None:
        config_obj = getattr(module, "config", None)
        getter = getattr(config_obj, "get_str", None) or getattr(config_obj, "get", None)
        if callable(getter):
            try:
                level = _coerce_level(getter("loglevel"))
            except Exception:
                level = None
            if level is not None and level != logging.NOTSET:
                return level
        logger_obj = getattr(module, "logger", None)
        if isinstance(logger_obj, logging.Logger) and logger_obj.getEffectiveLevel() != logging.NOTSET:
            return logger_obj.getEffectiveLevel()
    root_level = logging.getLogger().getEffectiveLevel()
    if root_level != logging.NOTSET:
        return root_level
    return EDMC_DEFAULT_LOG_LEVEL


def _dev_override_active() -> bool:
    prefs = globals().get("_preferences")
    if prefs is not None:
        return bool(getattr(prefs, "dev_mode", DEV_BUILD))
    return bool(DEV_BUILD)


def _diagnostic_logging_enabled() -> bool:
    """True when EDMC runs at DEBUG or this is a dev build."""

    return _resolve_edmc_log_level() <= logging.DEBUG or _dev_override_active()


def _effective_log_level() -> int:
    level = _resolve_edmc_log_level()
    if _dev_override_active():
        return min(level, logging.DEBUG)
    return level


class _EDMCLogHandler(logging.Handler):
    """Forward plugin records into EDMC's logger at EDMC's configured level."""

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno < _effective_log_level():
            return
        message = self.format(record)
        edmc_logger, legacy_log = _edmc_loggers()
        if edmc_logger is not None and edmc_logger.isEnabledFor(record.levelno):
            edmc_logger.log(record.levelno, message)
            return
        if legacy_log is not None:
            legacy_log(message)
            return
        root_logger = logging.getLogger()
        if root_logger.isEnabledFor(record.levelno):
            root_logger.log(record.levelno, message)


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_effective_log_level())
    if not any(isinstance(handler, _EDMCLogHandler) for handler in logger.handlers):
        handler = _EDMCLogHandler()
        handler.setFormatter(logging.Formatter(f"[%(asctime)s] [{LOG_TAG}] %(message)s", "%H:%M:%S"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


LOGGER = _configure_logger()
if DEV_BUILD:
    LOGGER.info(
        "Running Web Overlay dev build (%s); override via %s=0 to force release behaviour.",
        WEB_OVERLAY_VERSION,
        DEV_MODE_ENV_VAR,
    )


def _log(message: str) -> None:
    LOGGER.info(message)


def _resolve_config_dir(plugin_dir: Path) -> Path:
    """Per-user storage for downloaded payloads and the renderer cache."""

    module = _load_edmc_config_module()
    app_dir = getattr(getattr(module, "config", None), "app_dir_path", None) if module is not None else None
    base = Path(app_dir) / PLUGIN_NAME if app_dir else plugin_dir
    try:
        base.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Config directory %s unavailable (%s); using plugin directory", base, exc)
        return plugin_dir
    return base


class _PluginRuntime:
    """Session context wiring the installer, companion detector and renderer."""

    def __init__(
        self,
        plugin_dir: str,
        preferences: Preferences,
        *,
        config_dir: Optional[Path] = None,
        parent_pid: Optional[int] = None,
    ) -> None:
        self.plugin_dir = Path(plugin_dir)
        self.config_dir = Path(config_dir) if config_dir is not None else _resolve_config_dir(self.plugin_dir)
        self._preferences = preferences
        self._lock = threading.Lock()
        self._running = False
        self._renderer_ready = False
        self._tick_stop = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None
        self._renderer_log_handlers: List[logging.Handler] = []
        self._channel: Optional[Callable[[Mapping[str, Any]], bool]] = None

        dev_override = self.plugin_dir.parent if preferences.use_local_dependencies else None
        self.dependencies = DependencyManager(self.config_dir, dev_override_dir=dev_override)
        self.companions = CompanionDetector(check_interval_ticks=preferences.companion_check_ticks)
        self.renderer = RenderProcess(
            parent_pid if parent_pid is not None else os.getpid(),
            self.plugin_dir,
            self.config_dir,
            preferences.runtime_dir() or self.plugin_dir / RUNTIME_DIR_NAME,
            self.dependencies.dependency_path_for,
            adapter_luid=preferences.adapter_luid,
        )
        self.inlays = InlayCoordinator(preferences.inlays, self._send_to_renderer)

        self.dependencies.dependencies_ready.subscribe(self._on_dependencies_ready)
        self.companions.availability_changed.subscribe(self.inlays.on_availability_changed)
        self.renderer.crashed.subscribe(self.inlays.on_renderer_crashed)

    # Lifecycle ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> str:
        with self._lock:
            if self._running:
                return PLUGIN_NAME
            self._running = True
        LOGGER.setLevel(_effective_log_level())
        self._configure_renderer_log()
        state = self.dependencies.check_dependencies()
        if state is InstallState.CONFIRM:
            if self._preferences.auto_install_dependencies:
                self.dependencies.install()
            else:
                _log("Renderer dependencies are missing; waiting for install confirmation")
        self._start_tick_driver()
        _log("Plugin started")
        return PLUGIN_NAME

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        _log("Plugin stopping")
        self._tick_stop.set()
        thread = self._tick_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=TICK_JOIN_TIMEOUT)
            if thread.is_alive():
                LOGGER.debug("Tick driver did not exit within %.1fs", TICK_JOIN_TIMEOUT)
        self._tick_thread = None
        self.renderer.stop()
        self._renderer_ready = False
        detach_handlers(RENDERER_LOGGER, self._renderer_log_handlers)
        self._renderer_log_handlers = []

    def close(self) -> None:
        self.stop()
        self.renderer.close()
        self.companions.close()
        self.dependencies.close()

    # Host tick ----------------------------------------------------------------

    def tick(self) -> None:
        """One non-blocking pass of the host update loop."""

        if not self._running:
            return
        if self.dependencies.state is InstallState.COMPLETE:
            # A finished install is acknowledged by re-checking, which fires readiness.
            self.dependencies.check_dependencies()
        if self._renderer_ready:
            self.renderer.ensure_alive()
        self.companions.tick()

    def _start_tick_driver(self) -> None:
        if self._tick_thread and self._tick_thread.is_alive():
            return
        self._tick_stop.clear()
        interval = float(self._preferences.tick_interval_seconds)

        def _worker() -> None:
            while not self._tick_stop.wait(timeout=interval):
                try:
                    self.tick()
                except Exception as exc:
                    LOGGER.error("Web Overlay tick failed: %s", exc, exc_info=exc)

        thread = threading.Thread(target=_worker, name=TICK_THREAD_NAME, daemon=True)
        self._tick_thread = thread
        thread.start()

    # Dependencies ---------------------------------------------------------

    def install_dependencies(self) -> bool:
        if self.dependencies.state is not InstallState.CONFIRM:
            self.dependencies.check_dependencies()
        return self.dependencies.install()

    def retry_dependencies(self) -> InstallState:
        self.dependencies.reset()
        return self.dependencies.check_dependencies()

    def dependency_status(self) -> Dict[str, Any]:
        return {
            "state": self.dependencies.state.value,
            "missing": [dep.directory for dep in self.dependencies.missing],
            "progress": {
                key: value.value if hasattr(value, "value") else value
                for key, value in self.dependencies.progress().items()
            },
        }

    def _on_dependencies_ready(self) -> None:
        if not self._running or self._renderer_ready:
            return
        try:
            self.renderer.start()
        except RendererLaunchError as exc:
            LOGGER.error("Renderer could not be started: %s", exc)
            return
        self._renderer_ready = True
        self.inlays.hydrate()

    def apply_preferences(self) -> None:
        """Push edited inlays to the renderer without restarting it."""

        if self._renderer_ready:
            self.inlays.reconcile(self._preferences.inlays)
        else:
            self.inlays.replace_inlays(self._preferences.inlays)

    # Renderer channel -------------------------------------------------------

    def set_channel(self, send: Optional[Callable[[Mapping[str, Any]], bool]]) -> None:
        self._channel = send

    def _send_to_renderer(self, message: Mapping[str, Any]) -> bool:
        channel = self._channel
        if channel is None:
            LOGGER.debug("No renderer channel registered; dropping %s", message.get("event"))
            return False
        return bool(channel(message))

    def _configure_renderer_log(self) -> None:
        if self._renderer_log_handlers:
            return
        if not (self._preferences.capture_renderer_output and _diagnostic_logging_enabled()):
            return
        log_dir = resolve_logs_dir(self.plugin_dir, PLUGIN_NAME)
        try:
            handler = build_rotating_handler(log_dir, retention=self._preferences.renderer_log_retention)
        except OSError as exc:
            LOGGER.warning("Failed to initialise renderer log in %s: %s", log_dir, exc)
            return
        RENDERER_LOGGER.addHandler(handler)
        self._renderer_log_handlers.append(handler)
        LOGGER.debug("Renderer output captured to %s", log_dir)


# EDMC hook functions ------------------------------------------------------

_plugin: Optional[_PluginRuntime] = None
_preferences: Optional[Preferences] = None


def plugin_start3(plugin_dir: str) -> str:
    """EDMC entrypoint: initialise plugin and start runtime once."""
    _log(f"Initialising Web Overlay plugin from {plugin_dir}")
    global _plugin, _preferences
    _preferences = Preferences(Path(plugin_dir), dev_mode=DEV_BUILD)
    _plugin = _PluginRuntime(plugin_dir, _preferences)
    return _plugin.start()


def plugin_stop() -> None:
    """EDMC entrypoint: stop plugin safely; idempotent if not running."""
    global _plugin, _preferences
    if _plugin:
        try:
            _plugin.close()
        finally:
            _plugin = None
    _preferences = None


def plugin_app(parent) -> Optional[Any]:  # pragma: no cover - EDMC Tk frame hook
    return None


def plugin_prefs(parent, cmdr: str, is_beta: bool) -> Optional[Any]:  # pragma: no cover - optional settings pane
    LOGGER.debug("plugin_prefs invoked: parent=%r cmdr=%r is_beta=%s", parent, cmdr, is_beta)
    return None


def prefs_changed(cmdr: str, is_beta: bool) -> None:
    LOGGER.debug("prefs_changed invoked: cmdr=%r is_beta=%s", cmdr, is_beta)
    if _preferences is None:
        return
    try:
        _preferences.save()
    except OSError as exc:
        LOGGER.warning("Failed to save preferences: %s", exc)
    if _plugin:
        _plugin.apply_preferences()


def install_dependencies() -> bool:
    """Confirm the pending dependency download (the install button)."""

    if _plugin is None:
        return False
    return _plugin.install_dependencies()


def retry_dependencies() -> Optional[InstallState]:
    if _plugin is None:
        return None
    return _plugin.retry_dependencies()


def dependency_status() -> Optional[Dict[str, Any]]:
    if _plugin is None:
        return None
    return _plugin.dependency_status()


def register_renderer_channel(send: Callable[[Mapping[str, Any]], bool]) -> None:
    """Attach the transport that carries inlay messages to the renderer."""

    if _plugin is not None:
        _plugin.set_channel(send)


def unregister_renderer_channel() -> None:
    if _plugin is not None:
        _plugin.set_channel(None)


def companion_available() -> bool:
    return bool(_plugin and _plugin.companions.is_available)


# Metadata expected by some plugin loaders
name = PLUGIN_NAME
plugin_name = PLUGIN_NAME
version = PLUGIN_VERSION
