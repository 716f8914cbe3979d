"""Rate limiting for the gateway.

Fixed-window counters per (scope, identity), keyed in the shared store as
``rl:{scope}:{identity}:{bucket}`` so every server process sees the same
count. When the shared store is unreachable the limiter falls back to
per-process counters; the effective limit then scales with the number of
processes, and ``mode`` reports ``local`` so health checks can show it.
"""

import asyncio
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from sheetgate.app.core.cache import CacheBackend
from sheetgate.app.core.config import Settings
from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.exceptions import CacheUnavailableError

logger = get_logger(__name__)

MODE_DISTRIBUTED = "distributed"
MODE_LOCAL = "local"

# Paths never rate limited by the general middleware
EXEMPT_PATHS = frozenset({"/health"})


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: Optional[int] = None
    key: str = ""
    mode: str = MODE_DISTRIBUTED

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after or 1)
        return headers


@dataclass(frozen=True)
class RateLimitScope:
    """A named, independently counted limit."""
    name: str
    window_seconds: int
    max_requests: int
    skip_successful_requests: bool = False

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


def build_scopes(config: Settings) -> Dict[str, RateLimitScope]:
    """Rate limit scopes from settings."""
    return {
        "general": RateLimitScope(
            "general",
            config.rate_limit_general_window_seconds,
            config.rate_limit_general_max,
        ),
        "auth": RateLimitScope(
            "auth",
            config.rate_limit_auth_window_seconds,
            config.rate_limit_auth_max,
            skip_successful_requests=True,
        ),
        "extraction": RateLimitScope(
            "extraction",
            config.rate_limit_extraction_window_seconds,
            config.rate_limit_extraction_max,
        ),
        "export": RateLimitScope(
            "export",
            config.rate_limit_export_window_seconds,
            config.rate_limit_export_max,
        ),
    }


def resolve_identity(
    principal_id: Optional[str] = None,
    forwarded_for: Optional[str] = None,
    peer: Optional[str] = None,
) -> str:
    """Derive the rate limit identity for a caller.

    Prefers a verified principal id, then the first X-Forwarded-For entry,
    then the direct peer address. Unverified bearer credentials are never
    part of the identity.
    """
    if principal_id:
        return f"user:{principal_id}"

    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return f"ip:{first}"

    return f"ip:{peer or 'unknown'}"


def identity_from_request(request: Request, principal_id: Optional[str] = None) -> str:
    return resolve_identity(
        principal_id=principal_id,
        forwarded_for=request.headers.get("X-Forwarded-For"),
        peer=request.client.host if request.client else None,
    )


def rate_limit_key(scope: str, identity: str, bucket: int) -> str:
    return f"rl:{scope}:{identity}:{bucket}"


def _build_result(
    count: int, max_count: int, bucket: int, window_ms: int, now_ms: int, key: str, mode: str
) -> RateLimitResult:
    reset_ms = (bucket + 1) * window_ms
    allowed = count <= max_count
    return RateLimitResult(
        allowed=allowed,
        limit=max_count,
        remaining=max(0, max_count - count),
        reset_time=reset_ms // 1000,
        retry_after=None if allowed else max(1, math.ceil((reset_ms - now_ms) / 1000)),
        key=key,
        mode=mode,
    )


@dataclass
class _LocalWindow:
    count: int
    expires_at_ms: int


class InMemoryRateLimiter:
    """Per-process fixed-window counters.

    Memory optimization:
    - Uses OrderedDict for LRU cache behavior
    - Limits max entries to prevent unbounded memory growth
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        self._max_entries = max_entries
        self._clock = clock
        self._windows: "OrderedDict[str, _LocalWindow]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _enforce_lru_limit(self, now_ms: int) -> None:
        """Drop expired windows, then the least recently used ones."""
        if len(self._windows) < self._max_entries:
            return
        for key in [k for k, w in self._windows.items() if w.expires_at_ms <= now_ms]:
            del self._windows[key]
        if len(self._windows) >= self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._windows))):
                self._windows.popitem(last=False)

    async def incr(self, key: str, window_ms: int) -> int:
        async with self._lock:
            now_ms = self._now_ms()
            window = self._windows.get(key)
            if window is None or window.expires_at_ms <= now_ms:
                self._enforce_lru_limit(now_ms)
                window = _LocalWindow(count=0, expires_at_ms=now_ms + window_ms)
                self._windows[key] = window
            else:
                self._windows.move_to_end(key)
            window.count += 1
            return window.count

    async def decr(self, key: str) -> int:
        async with self._lock:
            window = self._windows.get(key)
            if window is None:
                return 0
            window.count = max(0, window.count - 1)
            return window.count

    async def cleanup(self) -> None:
        """Clean up expired windows."""
        async with self._lock:
            now_ms = self._now_ms()
            for key in [k for k, w in self._windows.items() if w.expires_at_ms <= now_ms]:
                del self._windows[key]


class DistributedRateLimiter:
    """Fixed-window limiter over the shared store with local fallback.

    Args:
        cache: Shared store backend, or None to always count locally.
        local: Fallback counters used while the shared store is unreachable.
        clock: Time source in seconds, injectable for tests.
    """

    def __init__(
        self,
        cache: Optional[CacheBackend],
        local: Optional[InMemoryRateLimiter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._local = local or InMemoryRateLimiter(clock=clock)
        self._clock = clock

    @property
    def mode(self) -> str:
        if self._cache is not None and self._cache.available:
            return MODE_DISTRIBUTED
        return MODE_LOCAL

    async def check_and_increment(
        self, scope: str, identity: str, window_seconds: int, max_count: int
    ) -> RateLimitResult:
        """Count one hit for (scope, identity) in the current window."""
        window_ms = window_seconds * 1000
        now_ms = int(self._clock() * 1000)
        bucket = now_ms // window_ms
        key = rate_limit_key(scope, identity, bucket)

        if self._cache is not None and self._cache.available:
            try:
                count, _ttl_ms = await self._cache.incr(key, window_ms)
                return _build_result(
                    count, max_count, bucket, window_ms, now_ms, key, MODE_DISTRIBUTED
                )
            except CacheUnavailableError as e:
                logger.warning(
                    f"Rate limiter falling back to local counters: {e}",
                    extra=get_log_context(scope=scope),
                )

        count = await self._local.incr(key, window_ms)
        return _build_result(count, max_count, bucket, window_ms, now_ms, key, MODE_LOCAL)

    async def check(self, scope: RateLimitScope, identity: str) -> RateLimitResult:
        return await self.check_and_increment(
            scope.name, identity, scope.window_seconds, scope.max_requests
        )

    async def release(self, result: RateLimitResult) -> None:
        """Undo one counted hit, in whichever store counted it."""
        if result.mode == MODE_DISTRIBUTED and self._cache is not None:
            try:
                await self._cache.decr(result.key)
            except CacheUnavailableError as e:
                logger.warning(f"Rate limit release failed for {result.key}: {e}")
            return
        await self._local.decr(result.key)


def rate_limited_response(scope: str, result: RateLimitResult) -> JSONResponse:
    message = (
        "Too many authentication attempts. Please try again later."
        if scope == "auth"
        else "Too many requests, please try again later."
    )
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": message,
            "retryAfter": result.retry_after,
        },
        headers=result.headers(),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the ``general`` scope to every request.

    The limiter and scopes are read from ``app.state.services`` at dispatch
    time. The decision is recorded on ``request.state.rate_limits`` so a
    route whose own scope is ``general`` does not count the request twice.
    """

    def __init__(self, app, scope_name: str = "general"):
        super().__init__(app)
        self.scope_name = scope_name

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        services = request.app.state.services
        scope = services.scopes[self.scope_name]
        identity = identity_from_request(request)
        result = await services.rate_limiter.check(scope, identity)

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    scope=scope.name,
                    path=request.url.path,
                    method=request.method,
                    identity=identity,
                ),
            )
            return rate_limited_response(scope.name, result)

        request.state.rate_limits = {scope.name: result}
        response = await call_next(request)

        for name, value in result.headers().items():
            response.headers.setdefault(name, value)
        return response
