"""Shared HTTP client construction.

One pooled client is created at startup and shared by every outbound
integration (identity provider, Google, token refresh).
"""

import httpx

from sheetgate.app.core.config import Settings, settings


def create_http_client(config: Settings = settings, **kwargs) -> httpx.AsyncClient:
    """Create an HTTP client with the configured timeouts and pool limits.

    Note: The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        config: Settings to read defaults from.
        **kwargs: Extra arguments passed to httpx.AsyncClient, e.g. a
            ``transport`` for tests.

    Returns:
        A new httpx.AsyncClient instance.
    """
    timeout = httpx.Timeout(config.httpx_timeout, connect=config.httpx_connect_timeout)
    limits = httpx.Limits(
        max_connections=config.httpx_max_connections,
        max_keepalive_connections=config.httpx_max_keepalive_connections,
    )
    return httpx.AsyncClient(timeout=timeout, limits=limits, **kwargs)
