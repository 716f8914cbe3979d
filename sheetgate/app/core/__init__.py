"""Core utilities for the gateway application."""

from sheetgate.app.core.cache import (
    CacheBackend,
    InMemoryCache,
    RedisCache,
    build_cache_backend,
)
from sheetgate.app.core.config import Settings, settings
from sheetgate.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "build_cache_backend",
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
