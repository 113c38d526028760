"""Observer lists and non-blocking guards shared by the plugin components."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional


class EventHook:
    """Explicit subscriber list for a single event kind.

    Subscribers are invoked synchronously on the emitting thread, in
    subscription order. A subscriber that raises is logged and skipped so the
    remaining subscribers still see the event.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None) -> None:
        self.name = name
        self._logger = logger or logging.getLogger("EDMCWebOverlay.Events")
        self._lock = threading.Lock()
        self._subscribers: List[Callable[..., Any]] = []

    def subscribe(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[..., Any]) -> None:
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def emit(self, *args: Any) -> int:
        """Deliver the event and return how many subscribers ran cleanly."""

        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for callback in subscribers:
            try:
                callback(*args)
            except Exception as exc:
                self._logger.error("Subscriber for %s failed: %s", self.name, exc, exc_info=exc)
                continue
            delivered += 1
        return delivered


class SingleFlight:
    """Try-lock guarding "at most one in-flight operation".

    ``try_enter`` never blocks; callers that lose the race simply skip their
    work. The winner must call ``leave`` once the operation finishes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_enter(self) -> bool:
        return self._lock.acquire(blocking=False)

    def leave(self) -> None:
        try:
            self._lock.release()
        except RuntimeError:
            pass

    @property
    def active(self) -> bool:
        return self._lock.locked()


def spawn_daemon(target: Callable[[], None], name: str) -> threading.Thread:
    """Default background runner: start ``target`` on a named daemon thread."""

    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()
    return thread


def dispatch_guarded(
    guard: SingleFlight,
    run_async: Callable[[Callable[[], None], str], Any],
    target: Callable[[], None],
    name: str,
    logger: logging.Logger,
) -> bool:
    """Schedule ``target`` under ``guard``; return False when already in flight.

    The guard is released when ``target`` returns, or immediately if the
    runner itself fails to schedule the work.
    """

    if not guard.try_enter():
        return False

    def _runner() -> None:
        try:
            target()
        finally:
            guard.leave()

    try:
        run_async(_runner, name)
    except Exception as exc:
        guard.leave()
        logger.error("Failed to schedule %s: %s", name, exc, exc_info=exc)
        return False
    return True
