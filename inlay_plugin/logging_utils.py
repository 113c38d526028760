"""File logging helpers for captured renderer output."""
from __future__ import annotations

import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

RENDERER_LOG_FILE_NAME = "web-overlay-renderer.log"
RENDERER_LOG_MAX_BYTES = 512 * 1024


def resolve_logs_dir(plugin_dir: Path, folder_name: str) -> Path:
    """Pick EDMC's ``logs`` folder next to the plugins directory when writable."""

    plugin_root = Path(plugin_dir).resolve()
    candidates = [parent / "logs" for parent in list(plugin_root.parents)[:2]]
    candidates.reverse()
    candidates.append(Path.cwd() / "logs")
    for base in candidates:
        target = base / folder_name
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        return target
    return plugin_root


def build_rotating_handler(
    log_dir: Path,
    file_name: str = RENDERER_LOG_FILE_NAME,
    *,
    retention: int,
    max_bytes: int = RENDERER_LOG_MAX_BYTES,
    formatter: Optional[logging.Formatter] = None,
) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / file_name,
        maxBytes=max_bytes,
        backupCount=max(0, int(retention) - 1),
        encoding="utf-8",
    )
    if formatter is None:
        formatter = logging.Formatter(
            "%(asctime)s.%(msecs)03d UTC - %(levelname)s - %(message)s",
            "%Y-%m-%d %H:%M:%S",
        )
        formatter.converter = time.gmtime
    handler.setFormatter(formatter)
    return handler


def detach_handlers(logger: logging.Logger, handlers: Iterable[logging.Handler]) -> None:
    for handler in list(handlers):
        logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:
            pass
