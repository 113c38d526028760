"""Preferences persistence for the Web Overlay plugin."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .coercion import as_bool, as_float, as_int
from .companion_detector import DEFAULT_CHECK_INTERVAL_TICKS
from .inlays import InlayConfiguration, parse_inlays

try:
    import config as _edmc_config_module  # type: ignore
    from config import config as EDMC_CONFIG  # type: ignore
except Exception:  # pragma: no cover - running outside EDMC
    _edmc_config_module = None
    EDMC_CONFIG = None


PREFERENCES_FILE = "web_overlay_settings.json"
CONFIG_PREFIX = "edmc_web_overlay."
CONFIG_STATE_VERSION = 1
CONFIG_VERSION_KEY = f"{CONFIG_PREFIX}state_version"
TICK_INTERVAL_MIN = 0.01
TICK_INTERVAL_MAX = 1.0
COMPANION_CHECK_TICKS_MIN = 10
RENDERER_LOG_RETENTION_MIN = 1
RENDERER_LOG_RETENTION_MAX = 20

LOGGER = logging.getLogger("EDMCWebOverlay.Preferences")

# Scalar fields stored in EDMC config, with the typed getter that reads each.
_CONFIG_FIELDS = (
    ("use_local_dependencies", "get_bool"),
    ("auto_install_dependencies", "get_bool"),
    ("adapter_luid", "get_int"),
    ("renderer_runtime_dir", "get_str"),
    ("companion_check_ticks", "get_int"),
    ("tick_interval_seconds", "get_str"),
    ("capture_renderer_output", "get_bool"),
    ("renderer_log_retention", "get_int"),
)


def _config_sources() -> List[Any]:
    # Module-level helpers win over methods on the ``config`` object.
    return [source for source in (_edmc_config_module, EDMC_CONFIG) if source is not None]


def _config_method(*names: str) -> Optional[Callable[..., Any]]:
    for name in names:
        for source in _config_sources():
            method = getattr(source, name, None)
            if callable(method):
                return method
    return None


def _config_key(name: str) -> str:
    return CONFIG_PREFIX + name


def _read_config(typed_getter: str, name: str, default: Any) -> Any:
    getter = _config_method(typed_getter, "get")
    if getter is None:
        return default
    key = _config_key(name)
    try:
        try:
            value = getter(key, default)
        except TypeError:
            # Typed getters on some EDMC releases take no default.
            value = getter(key)
    except Exception as exc:
        LOGGER.debug("Could not read %s from EDMC config: %s", key, exc)
        return default
    return default if value is None else value


def _write_config(key: str, value: Any) -> None:
    setter = _config_method("set")
    if setter is None:
        return
    try:
        setter(key, value)
    except (TypeError, ValueError):
        setter(key, str(value))


def _coerce_inlays(value: Any, default: List[InlayConfiguration]) -> List[InlayConfiguration]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return default
    if not isinstance(value, (list, tuple)):
        return default
    return parse_inlays(value)


@dataclass
class Preferences:
    """EDMC-config backed preferences with a JSON shadow file."""

    plugin_dir: Path
    dev_mode: bool = False
    use_local_dependencies: bool = False
    auto_install_dependencies: bool = False
    adapter_luid: int = 0
    renderer_runtime_dir: str = ""
    companion_check_ticks: int = DEFAULT_CHECK_INTERVAL_TICKS
    tick_interval_seconds: float = 0.1
    capture_renderer_output: bool = True
    renderer_log_retention: int = 5
    inlays: List[InlayConfiguration] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.plugin_dir = Path(self.plugin_dir)
        self._path = self.plugin_dir / PREFERENCES_FILE
        self._config_enabled = _config_method("set") is not None
        if self._config_enabled:
            self._load_from_config()
            # The shadow file wins for anything EDMC failed to persist last session.
            self._load_from_json(silent=True)
        else:
            self._load_from_json()

    @property
    def path(self) -> Path:
        return self._path

    def runtime_dir(self) -> Optional[Path]:
        text = (self.renderer_runtime_dir or "").strip()
        if not text:
            return None
        candidate = Path(text).expanduser()
        return candidate if candidate.is_absolute() else self.plugin_dir / candidate

    # Persistence ---------------------------------------------------------

    def _load_from_json(self, *, silent: bool = False) -> None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError):
            if not silent:
                LOGGER.debug("%s is not valid JSON; ignoring contents.", PREFERENCES_FILE)
            return
        if isinstance(data, Mapping):
            self._apply_raw_data(data)

    def _load_from_config(self) -> None:
        payload: Dict[str, Any] = {}
        for name, typed_getter in _CONFIG_FIELDS:
            payload[name] = _read_config(typed_getter, name, getattr(self, name))
        payload["inlays"] = _read_config("get_str", "inlays", "[]")
        self._apply_raw_data(payload)

    def _apply_raw_data(self, data: Mapping[str, Any]) -> None:
        self.use_local_dependencies = as_bool(data.get("use_local_dependencies"), self.use_local_dependencies)
        self.auto_install_dependencies = as_bool(data.get("auto_install_dependencies"), self.auto_install_dependencies)
        self.adapter_luid = as_int(data.get("adapter_luid"), self.adapter_luid)
        runtime_dir = data.get("renderer_runtime_dir")
        if isinstance(runtime_dir, str):
            self.renderer_runtime_dir = runtime_dir.strip()
        self.companion_check_ticks = as_int(
            data.get("companion_check_ticks"),
            self.companion_check_ticks,
            minimum=COMPANION_CHECK_TICKS_MIN,
        )
        self.tick_interval_seconds = as_float(
            data.get("tick_interval_seconds"),
            self.tick_interval_seconds,
            minimum=TICK_INTERVAL_MIN,
            maximum=TICK_INTERVAL_MAX,
        )
        self.capture_renderer_output = as_bool(data.get("capture_renderer_output"), self.capture_renderer_output)
        self.renderer_log_retention = as_int(
            data.get("renderer_log_retention"),
            self.renderer_log_retention,
            minimum=RENDERER_LOG_RETENTION_MIN,
            maximum=RENDERER_LOG_RETENTION_MAX,
        )
        if "inlays" in data:
            self.inlays = _coerce_inlays(data.get("inlays"), self.inlays)

    def save(self) -> None:
        if self._config_enabled:
            try:
                self._persist_to_config()
            except Exception as exc:
                LOGGER.warning("Failed to persist preferences into EDMC config: %s", exc)
        self._write_shadow_file()

    def _shadow_payload(self) -> Dict[str, Any]:
        return {
            "use_local_dependencies": bool(self.use_local_dependencies),
            "auto_install_dependencies": bool(self.auto_install_dependencies),
            "adapter_luid": int(self.adapter_luid),
            "renderer_runtime_dir": str(self.renderer_runtime_dir or ""),
            "companion_check_ticks": int(self.companion_check_ticks),
            "tick_interval_seconds": float(self.tick_interval_seconds),
            "capture_renderer_output": bool(self.capture_renderer_output),
            "renderer_log_retention": int(self.renderer_log_retention),
            "inlays": [inlay.to_mapping() for inlay in self.inlays],
        }

    def _write_shadow_file(self) -> None:
        payload = self._shadow_payload()
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _persist_to_config(self) -> None:
        payload = self._shadow_payload()
        payload["inlays"] = json.dumps(payload["inlays"])
        payload["tick_interval_seconds"] = str(payload["tick_interval_seconds"])
        for name, value in payload.items():
            _write_config(_config_key(name), value)
        _write_config(CONFIG_VERSION_KEY, CONFIG_STATE_VERSION)
