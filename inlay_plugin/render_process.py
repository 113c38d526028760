"""Supervision of the out-of-process web renderer."""
from __future__ import annotations

import base64
import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Mapping, Optional

import psutil

from .events import EventHook, SingleFlight, dispatch_guarded, spawn_daemon

LOGGER = logging.getLogger("EDMCWebOverlay.Renderer")

RENDERER_DIR_NAME = "renderer"
RENDERER_EXECUTABLE = "WebOverlayRenderer.exe" if sys.platform.startswith("win") else "WebOverlayRenderer"
CACHE_DIR_NAME = "cef-cache"
SIGNAL_DIR_NAME = "signals"
KEEP_ALIVE_PREFIX = "EDMCWebOverlayRendererKeepAlive"
IPC_CHANNEL_PREFIX = "EDMCWebOverlayRendererIpcChannel"
RUNTIME_ENV_VAR = "DOTNET_ROOT"
DEFAULT_GRACE_SECONDS = 1.0

# Interpreter/runtime variables inherited from EDMC that must not leak into
# the renderer.
_HOST_ENV_KEYS = ("PYTHONHOME", "PYTHONPATH", "TCL_LIBRARY", "TK_LIBRARY", RUNTIME_ENV_VAR)


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"


class RendererLaunchError(RuntimeError):
    """Raised when the renderer executable cannot be started."""


@dataclass(frozen=True)
class LaunchParams:
    parent_pid: int
    host_dir: str
    dependency_dir: str
    cache_dir: str
    adapter_luid: int
    keep_alive_handle_name: str
    ipc_channel_name: str

    def to_argument(self) -> str:
        payload = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def from_argument(cls, argument: str) -> "LaunchParams":
        data = json.loads(base64.b64decode(argument.encode("ascii")).decode("utf-8"))
        return cls(**data)


@dataclass(frozen=True)
class _LaunchSpec:
    command: List[str]
    cwd: str
    env: Dict[str, str]
    params: LaunchParams


class ShutdownSignal:
    """Named shutdown handle shared with the renderer.

    On Windows this is a manual-reset kernel event the renderer waits on; other
    platforms use a marker file the renderer polls for.
    """

    def __init__(self, name: str, signal_dir: Path) -> None:
        self.name = name
        self._marker = Path(signal_dir) / name

    @property
    def marker_path(self) -> Path:
        return self._marker

    def clear(self) -> None:
        if sys.platform.startswith("win"):
            return
        self._marker.unlink(missing_ok=True)

    def set(self) -> None:
        if sys.platform.startswith("win"):
            self._set_windows_event()
            return
        self._marker.parent.mkdir(parents=True, exist_ok=True)
        self._marker.touch()

    def _set_windows_event(self) -> None:
        import ctypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.CreateEventW(None, True, False, self.name)
        if not handle:
            raise OSError(f"CreateEventW failed for {self.name}")
        try:
            kernel32.SetEvent(handle)
        finally:
            kernel32.CloseHandle(handle)


def build_renderer_environment(runtime_dir: Optional[Path], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    for key in _HOST_ENV_KEYS:
        env.pop(key, None)
    if runtime_dir is not None:
        env[RUNTIME_ENV_VAR] = str(runtime_dir)
    return env


class RenderProcess:
    """Keeps exactly one renderer process alive for the plugin session.

    ``check_exited`` and ``ensure_alive`` are safe to call on every host tick:
    the exit query and the restart both run through ``run_async`` and each is
    limited to one in-flight operation.
    """

    def __init__(
        self,
        parent_pid: int,
        plugin_dir: Path,
        config_dir: Path,
        runtime_dir: Optional[Path],
        dependency_path: Callable[[str], Path],
        *,
        adapter_luid: int = 0,
        dependency_key: str = "cef",
        executable: Optional[Path] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        run_async: Optional[Callable[[Callable[[], None], str], Any]] = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._parent_pid = int(parent_pid)
        self._plugin_dir = Path(plugin_dir)
        self._config_dir = Path(config_dir)
        self._runtime_dir = Path(runtime_dir) if runtime_dir is not None else None
        self._dependency_path = dependency_path
        self._adapter_luid = int(adapter_luid)
        self._dependency_key = dependency_key
        self._executable = Path(executable) if executable else self._plugin_dir / RENDERER_DIR_NAME / RENDERER_EXECUTABLE
        self._popen = popen
        self._run_async = run_async or spawn_daemon
        self._grace_seconds = max(0.0, float(grace_seconds))
        self._logger = logger or LOGGER

        self.keep_alive_handle_name = f"{KEEP_ALIVE_PREFIX}{self._parent_pid}"
        self.ipc_channel_name = f"{IPC_CHANNEL_PREFIX}{self._parent_pid}"
        self._shutdown_signal = ShutdownSignal(self.keep_alive_handle_name, self._config_dir / SIGNAL_DIR_NAME)

        self._process: Optional[Any] = None
        self._running = False
        self._has_exited = False
        self._closed = False
        # Serialises process swaps against stop(); never held across spawn or wait.
        self._state_lock = threading.Lock()
        self._restart_guard = SingleFlight()
        self._exit_check_guard = SingleFlight()
        self.crashed = EventHook("renderer_crashed", self._logger)

        self._launch = self._build_launch()

    # Introspection ------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_exited(self) -> bool:
        return self._has_exited

    @property
    def launch_params(self) -> LaunchParams:
        return self._launch.params

    @property
    def process(self) -> Optional[Any]:
        return self._process

    @property
    def state(self) -> SupervisorState:
        if not self._running:
            return SupervisorState.STOPPED
        if self._restart_guard.active:
            return SupervisorState.RESTARTING
        if self._has_exited:
            return SupervisorState.CRASHED
        return SupervisorState.RUNNING

    # Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        # The payload may have been installed since construction.
        self._launch = self._build_launch()
        process = self._spawn(self._launch)
        with self._state_lock:
            self._process = process
            self._has_exited = False
            self._running = True

    def stop(self) -> None:
        """Stop the renderer; a restart still spawning discards its own process."""

        with self._state_lock:
            if not self._running:
                return
            self._running = False
            process = self._process
        self._terminate(process)

    def close(self) -> None:
        self.stop()
        self._closed = True
        self.crashed.clear()

    def _terminate(self, process: Optional[Any]) -> None:
        try:
            self._shutdown_signal.set()
        except OSError as exc:
            self._logger.warning("Failed to signal renderer shutdown: %s", exc)
        if process is None:
            return
        try:
            process.wait(timeout=self._grace_seconds)
        except subprocess.TimeoutExpired:
            pass
        except Exception as exc:
            self._logger.debug("Waiting for renderer exit failed: %s", exc)
        if self._kill_tree(process):
            try:
                process.wait(timeout=self._grace_seconds)
            except subprocess.TimeoutExpired:
                self._logger.warning("Renderer pid=%s still alive after kill", getattr(process, "pid", "?"))

    # Crash detection --------------------------------------------------------

    def check_exited(self) -> bool:
        """Return the cached exit flag, refreshing it in the background."""

        if not self._running or self._has_exited:
            return self._has_exited
        process = self._process
        dispatch_guarded(
            self._exit_check_guard,
            self._run_async,
            lambda: self._query_exit_status(process),
            "WebOverlayRendererExitCheck",
            self._logger,
        )
        return self._has_exited

    def ensure_alive(self) -> None:
        if not self._running or not self.check_exited():
            return
        dispatch_guarded(
            self._restart_guard,
            self._run_async,
            self._restart,
            "WebOverlayRendererRestart",
            self._logger,
        )

    def _query_exit_status(self, process: Optional[Any]) -> None:
        if process is None:
            return
        try:
            exited = process.poll() is not None
        except Exception as exc:
            self._logger.error("Failed to get renderer exit status: %s", exc, exc_info=exc)
            return
        # A restart may have swapped the process while the query ran.
        if exited and process is self._process and not self._closed:
            self._has_exited = True

    def _restart(self) -> None:
        if not self._running or not self._has_exited or self._closed:
            return
        self._logger.error("Render process crashed - will restart asap")
        try:
            launch = self._build_launch()
            process = self._spawn(launch)
        except Exception as exc:
            self._logger.error("Failed to restart render process: %s", exc, exc_info=exc)
            return
        with self._state_lock:
            superseded = not self._running or self._closed
            if not superseded:
                self._launch = launch
                self._process = process
                self._has_exited = False
        if superseded:
            # stop() ran while we were spawning and cannot see this process.
            self._logger.info("Renderer stopped during restart; discarding pid=%s", getattr(process, "pid", "?"))
            self._terminate(process)
            return
        self.crashed.emit()

    # Process plumbing -----------------------------------------------------

    def _build_launch(self) -> _LaunchSpec:
        dependency_dir = self._dependency_path(self._dependency_key)
        params = LaunchParams(
            parent_pid=self._parent_pid,
            host_dir=str(self._plugin_dir),
            dependency_dir=str(dependency_dir),
            cache_dir=str(self._config_dir / CACHE_DIR_NAME),
            adapter_luid=self._adapter_luid,
            keep_alive_handle_name=self.keep_alive_handle_name,
            ipc_channel_name=self.ipc_channel_name,
        )
        return _LaunchSpec(
            command=[str(self._executable), params.to_argument()],
            cwd=str(self._executable.parent),
            env=build_renderer_environment(self._runtime_dir),
            params=params,
        )

    def _spawn(self, launch: _LaunchSpec) -> Any:
        if not Path(launch.command[0]).is_file():
            raise RendererLaunchError(f"Renderer executable not found at {launch.command[0]}")
        self._shutdown_signal.clear()
        kwargs: Dict[str, Any] = {
            "cwd": launch.cwd,
            "env": launch.env,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
            "text": True,
            "encoding": "utf-8",
            "errors": "replace",
        }
        if sys.platform.startswith("win"):
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        try:
            process = self._popen(launch.command, **kwargs)
        except OSError as exc:
            raise RendererLaunchError(f"Failed to start renderer: {exc}") from exc
        self._logger.debug(
            "Renderer started (pid=%s dependency_dir=%s)",
            getattr(process, "pid", "?"),
            launch.params.dependency_dir,
        )
        self._forward_output(process)
        return process

    def _forward_output(self, process: Any) -> List[threading.Thread]:
        streams = (
            (getattr(process, "stdout", None), logging.INFO),
            (getattr(process, "stderr", None), logging.ERROR),
        )
        readers: List[threading.Thread] = []
        for stream, level in streams:
            if stream is None:
                continue
            reader = threading.Thread(
                target=self._pump_stream,
                args=(stream, level),
                name=f"WebOverlayRendererOutput-{logging.getLevelName(level).lower()}",
                daemon=True,
            )
            reader.start()
            readers.append(reader)
        return readers

    def _pump_stream(self, stream: IO[str], level: int) -> None:
        try:
            for line in iter(stream.readline, ""):
                text = line.rstrip("\r\n")
                if text.strip():
                    self._logger.log(level, "[Render]: %s", text)
        except (OSError, ValueError) as exc:
            self._logger.debug("Renderer output stream closed: %s", exc)

    def _kill_tree(self, process: Any) -> bool:
        """Kill the renderer and its CEF subprocesses; False if it was already gone."""

        pid = getattr(process, "pid", None)
        if pid is None or process.poll() is not None:
            return False
        try:
            root = psutil.Process(pid)
            children = root.children(recursive=True)
        except psutil.NoSuchProcess:
            return False
        for proc in [*children, root]:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.Error as exc:
                self._logger.warning("Failed to kill renderer process pid=%s: %s", proc.pid, exc)
        return True
