"""Core utilities for ratewarden."""

from ratewarden.app.core.config import DEFAULT_TIERS, DEFAULT_WINDOW_MS, Settings, settings
from ratewarden.app.core.logging import get_logger, setup_logging
from ratewarden.app.core.utils import ceil_seconds, is_unbounded, now_ms

__all__ = [
    "DEFAULT_TIERS",
    "DEFAULT_WINDOW_MS",
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "ceil_seconds",
    "is_unbounded",
    "now_ms",
]
