"""Low-frequency detection of optional companion applications."""
from __future__ import annotations

import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import psutil

from .events import EventHook, SingleFlight, dispatch_guarded, spawn_daemon

LOGGER = logging.getLogger("EDMCWebOverlay.Companions")

DEFAULT_CHECK_INTERVAL_TICKS = 2000
DEFAULT_MIN_UPTIME_SECONDS = 5.0


class GateUnavailable(RuntimeError):
    """Raised when no companion listening gate has been registered."""


@dataclass(frozen=True)
class CompanionProfile:
    """How to recognise one companion application in the process list."""

    process_name: str
    window_title_hint: Optional[str] = None
    min_uptime_seconds: float = DEFAULT_MIN_UPTIME_SECONDS

    def matches_name(self, name: str) -> bool:
        return _normalise_process_name(name) == _normalise_process_name(self.process_name)

    def is_ready(self, window_titles: Sequence[str], uptime_seconds: float) -> bool:
        # A freshly spawned companion is still loading until its main window
        # shows up or it has been alive long enough.
        if self.window_title_hint and any(self.window_title_hint in title for title in window_titles):
            return True
        return uptime_seconds >= self.min_uptime_seconds


DEFAULT_COMPANIONS: Tuple[CompanionProfile, ...] = (
    CompanionProfile("EDDiscovery", window_title_hint="EDDiscovery"),
    CompanionProfile("ObservatoryCore", window_title_hint="Elite Observatory"),
    CompanionProfile("SrvSurvey"),
)


def _normalise_process_name(name: str) -> str:
    token = (name or "").strip().lower()
    if token.endswith(".exe"):
        token = token[:-4]
    return token


# Listening gate registry --------------------------------------------------

_gate: Optional[Callable[[], bool]] = None
_gate_lock = threading.Lock()


def register_listening_gate(gate: Callable[[], bool]) -> None:
    """Register the fast-path "is a companion actively listening" query.

    Companion plugins call this so detection can skip the process scan.
    """

    global _gate
    with _gate_lock:
        _gate = gate


def unregister_listening_gate() -> None:
    global _gate
    with _gate_lock:
        _gate = None


def query_listening_gate() -> bool:
    with _gate_lock:
        gate = _gate
    if gate is None:
        raise GateUnavailable("no companion listening gate registered")
    return bool(gate())


# Windows window-title lookup ------------------------------------------------


def window_titles_for_pid(pid: int) -> List[str]:
    """Return visible top-level window titles owned by ``pid`` (Windows only)."""

    if not sys.platform.startswith("win"):
        return []
    import ctypes
    from ctypes import wintypes

    user32 = ctypes.windll.user32  # type: ignore[attr-defined]
    titles: List[str] = []
    enum_proc = ctypes.WINFUNCTYPE(wintypes.BOOL, wintypes.HWND, wintypes.LPARAM)

    def _collect(hwnd, _lparam):  # type: ignore[no-untyped-def]
        owner = wintypes.DWORD()
        user32.GetWindowThreadProcessId(hwnd, ctypes.byref(owner))
        if owner.value != pid or not user32.IsWindowVisible(hwnd):
            return True
        length = user32.GetWindowTextLengthW(hwnd)
        if length > 0:
            buffer = ctypes.create_unicode_buffer(length + 1)
            user32.GetWindowTextW(hwnd, buffer, length + 1)
            titles.append(buffer.value)
        return True

    user32.EnumWindows(enum_proc(_collect), 0)
    return titles


# Edge mailbox -----------------------------------------------------------------


class AvailabilityMailbox:
    """Single-slot edge buffer: later posts overwrite, ``take`` drains."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Optional[bool] = None

    def post(self, available: bool) -> None:
        with self._lock:
            self._pending = bool(available)

    def take(self) -> Optional[bool]:
        with self._lock:
            pending, self._pending = self._pending, None
        return pending

    @property
    def pending(self) -> bool:
        return self._pending is not None


class CompanionDetector:
    """Debounced companion availability signal driven by the host tick."""

    def __init__(
        self,
        *,
        profiles: Sequence[CompanionProfile] = DEFAULT_COMPANIONS,
        check_interval_ticks: int = DEFAULT_CHECK_INTERVAL_TICKS,
        gate: Callable[[], bool] = query_listening_gate,
        run_async: Optional[Callable[[Callable[[], None], str], Any]] = None,
        process_iter: Optional[Callable[..., Iterable[Any]]] = None,
        window_titles: Callable[[int], List[str]] = window_titles_for_pid,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._profiles: Tuple[CompanionProfile, ...] = tuple(profiles)
        self._interval = max(0, int(check_interval_ticks))
        self._gate = gate
        self._run_async = run_async or spawn_daemon
        self._process_iter = process_iter or psutil.process_iter
        self._window_titles = window_titles
        self._clock = clock
        self._logger = logger or LOGGER
        self._mailbox = AvailabilityMailbox()
        self._detect_guard = SingleFlight()
        self._ticks_since_check = self._interval
        self._is_available = False
        self._closed = False
        self.availability_changed = EventHook("availability_changed", self._logger)

    @property
    def is_available(self) -> bool:
        return self._is_available

    @property
    def detection_in_flight(self) -> bool:
        return self._detect_guard.active

    def tick(self) -> None:
        edge = self._mailbox.take()
        if edge is not None:
            self.availability_changed.emit(edge)

        if self._ticks_since_check < self._interval:
            self._ticks_since_check += 1
            return
        self._ticks_since_check = 0
        dispatch_guarded(
            self._detect_guard,
            self._run_async,
            self._detect_and_publish,
            "WebOverlayCompanionCheck",
            self._logger,
        )

    def close(self) -> None:
        self._closed = True
        self.availability_changed.clear()

    def detect(self) -> bool:
        try:
            return bool(self._gate())
        except GateUnavailable:
            pass
        except Exception as exc:
            self._logger.debug("Companion listening gate failed; scanning processes: %s", exc)
        return self._scan_processes()

    def _detect_and_publish(self) -> None:
        try:
            available = self.detect()
        except Exception as exc:
            self._logger.warning("Companion detection failed: %s", exc, exc_info=exc)
            return
        self._publish(available)

    def _publish(self, available: bool) -> None:
        if self._closed or available == self._is_available:
            return
        self._is_available = available
        self._logger.info("Companion application %s", "detected" if available else "no longer detected")
        self._mailbox.post(available)

    def _scan_processes(self) -> bool:
        now = self._clock()
        for proc in self._process_iter(["pid", "name", "create_time"]):
            info = getattr(proc, "info", None) or {}
            name = info.get("name") or ""
            profile = next((item for item in self._profiles if item.matches_name(name)), None)
            if profile is None:
                continue
            created = info.get("create_time") or now
            titles: List[str] = []
            if profile.window_title_hint:
                try:
                    titles = self._window_titles(int(info.get("pid") or 0))
                except Exception as exc:
                    self._logger.debug("Window title lookup failed for %s: %s", name, exc)
            if profile.is_ready(titles, now - float(created)):
                return True
        return False
