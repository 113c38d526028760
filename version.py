"""Version metadata for EDMC Web Overlay."""
from __future__ import annotations

import os
import re
from typing import Optional

__all__ = ["__version__", "DEV_MODE_ENV_VAR", "PRODUCT_NAME", "is_dev_build", "user_agent"]

__version__ = "0.3.0-dev"
PRODUCT_NAME = "EDMCWebOverlay"
DEV_MODE_ENV_VAR = "WEB_OVERLAY_DEV_MODE"

_TRUE_TOKENS = {"1", "true", "yes", "on"}
_FALSE_TOKENS = {"0", "false", "no", "off"}
_DEV_MARKER = re.compile(r"(?:^|[.\-+])dev\d*(?:$|[.\-+])")


def _env_override() -> Optional[bool]:
    raw = os.getenv(DEV_MODE_ENV_VAR)
    if raw is None:
        return None
    token = raw.strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def is_dev_build(version: Optional[str] = None) -> bool:
    """Return True when developer-only behaviour should be enabled.

    ``WEB_OVERLAY_DEV_MODE`` wins when set to a recognised boolean token;
    otherwise any ``dev`` segment in the version string (``0.3.0-dev``,
    ``0.3.0.dev2``) marks a dev build.
    """

    override = _env_override()
    if override is not None:
        return override
    identifier = (version or __version__ or "").strip().lower()
    return bool(identifier) and _DEV_MARKER.search(identifier) is not None


def user_agent() -> str:
    """HTTP User-Agent sent with dependency downloads."""

    return f"{PRODUCT_NAME}/{__version__}"
