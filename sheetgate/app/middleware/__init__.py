"""Middleware package for the gateway."""

from sheetgate.app.middleware.rate_limit import (
    DistributedRateLimiter,
    InMemoryRateLimiter,
    RateLimitMiddleware,
)
from sheetgate.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "DistributedRateLimiter",
    "InMemoryRateLimiter",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
