"""Inlay records and the bookkeeping that keeps the renderer in sync with them."""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .coercion import as_bool, as_float

LOGGER = logging.getLogger("EDMCWebOverlay.Inlays")

DEFAULT_INLAY_URL = "about:blank"
ZOOM_MIN = 10.0
ZOOM_MAX = 500.0


@dataclass
class InlayConfiguration:
    guid: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "New inlay"
    url: str = DEFAULT_INLAY_URL
    disabled: bool = False
    companion_only: bool = False
    zoom: float = 100.0
    muted: bool = False
    locked: bool = False
    click_through: bool = False
    fullscreen: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "InlayConfiguration":
        inlay = cls()
        guid = str(data.get("guid") or "").strip()
        if guid:
            inlay.guid = guid
        name = data.get("name")
        if isinstance(name, str) and name.strip():
            inlay.name = name.strip()
        url = data.get("url")
        inlay.url = url.strip() if isinstance(url, str) and url.strip() else DEFAULT_INLAY_URL
        for flag in ("disabled", "companion_only", "muted", "locked", "click_through", "fullscreen"):
            if flag in data:
                setattr(inlay, flag, as_bool(data.get(flag), getattr(inlay, flag)))
        inlay.zoom = as_float(data.get("zoom"), inlay.zoom, minimum=ZOOM_MIN, maximum=ZOOM_MAX)
        return inlay

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "guid": self.guid,
            "name": self.name,
            "url": self.url or DEFAULT_INLAY_URL,
            "disabled": bool(self.disabled),
            "companion_only": bool(self.companion_only),
            "zoom": float(self.zoom),
            "muted": bool(self.muted),
            "locked": bool(self.locked),
            "click_through": bool(self.click_through),
            "fullscreen": bool(self.fullscreen),
        }


def parse_inlays(raw: Any) -> List[InlayConfiguration]:
    if not isinstance(raw, (list, tuple)):
        return []
    inlays: List[InlayConfiguration] = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, Mapping):
            continue
        inlay = InlayConfiguration.from_mapping(entry)
        if inlay.guid in seen:
            continue
        seen.add(inlay.guid)
        inlays.append(inlay)
    return inlays


class InlayCoordinator:
    """Pushes inlay lifecycle messages to the renderer channel.

    The renderer holds no state across restarts, so a crash means every
    visible inlay is created again from scratch.
    """

    def __init__(
        self,
        inlays: Iterable[InlayConfiguration],
        send: Callable[[Mapping[str, Any]], bool],
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._inlays = list(inlays)
        self._send = send
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._companion_available = False

    @property
    def companion_available(self) -> bool:
        return self._companion_available

    def replace_inlays(self, inlays: Iterable[InlayConfiguration]) -> None:
        with self._lock:
            self._inlays = list(inlays)

    def visible_inlays(self) -> List[InlayConfiguration]:
        with self._lock:
            inlays = list(self._inlays)
        return [
            inlay
            for inlay in inlays
            if not inlay.disabled and (not inlay.companion_only or self._companion_available)
        ]

    def hydrate(self) -> int:
        sent = 0
        for inlay in self.visible_inlays():
            if self._dispatch("add", inlay):
                sent += 1
        return sent

    def reconcile(self, inlays: Iterable[InlayConfiguration]) -> None:
        """Swap in edited inlays, sending the difference to a live renderer."""

        previous = {inlay.guid for inlay in self.visible_inlays()}
        self.replace_inlays(inlays)
        for inlay in self.visible_inlays():
            self._dispatch("update" if inlay.guid in previous else "add", inlay)
            previous.discard(inlay.guid)
        for guid in sorted(previous):
            self._send_message({"event": "remove", "inlay": {"guid": guid}})

    def on_availability_changed(self, available: bool) -> None:
        self._companion_available = bool(available)
        with self._lock:
            affected = [inlay for inlay in self._inlays if inlay.companion_only and not inlay.disabled]
        action = "add" if available else "remove"
        for inlay in affected:
            self._dispatch(action, inlay)

    def on_renderer_crashed(self) -> None:
        self._logger.info("Renderer restarted; recreating inlays")
        self._send_message({"event": "init"})
        self.hydrate()

    def _dispatch(self, action: str, inlay: InlayConfiguration) -> bool:
        return self._send_message({"event": action, "inlay": inlay.to_mapping()})

    def _send_message(self, message: Mapping[str, Any]) -> bool:
        try:
            return bool(self._send(message))
        except Exception as exc:
            self._logger.warning("Failed to deliver %s to renderer: %s", message.get("event"), exc)
            return False
