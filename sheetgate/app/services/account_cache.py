"""Read-through, write-invalidate cache for account snapshots.

Entries live in the shared store under ``user:profile:{id}``. The cache is
never authoritative: every failure degrades to "absent" so callers fall
through to the durable store.

Invalidation is the correctness-critical path. A failed delete is retried
once; if it still fails the id is remembered locally, reads for it report
absent, and the delete is replayed on the next successful cache call.
"""

import json
from typing import Optional

from sheetgate.app.core.cache import CacheBackend
from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import AccountSnapshot
from sheetgate.app.exceptions import CacheUnavailableError

logger = get_logger(__name__)

KEY_PREFIX = "user:profile:"
DEFAULT_TTL_SECONDS = 3600


def cache_key(account_id: str) -> str:
    return f"{KEY_PREFIX}{account_id}"


class AccountCache:
    """Entity cache for account snapshots.

    Args:
        backend: Shared store backend, or None to run with caching disabled.
        ttl: Entry lifetime in seconds.
    """

    def __init__(self, backend: Optional[CacheBackend], ttl: int = DEFAULT_TTL_SECONDS):
        self._backend = backend
        self._ttl = ttl
        self._pending: set[str] = set()

    @property
    def backend(self) -> Optional[CacheBackend]:
        return self._backend

    @property
    def pending_count(self) -> int:
        """Invalidations not yet applied to the shared store."""
        return len(self._pending)

    def _usable(self) -> bool:
        return self._backend is not None and self._backend.available

    async def _flush_pending(self) -> None:
        for account_id in list(self._pending):
            await self._backend.delete(cache_key(account_id))
            self._pending.discard(account_id)
            logger.info(
                "Replayed pending cache invalidation",
                extra=get_log_context(account_id=account_id),
            )

    async def get(self, account_id: str) -> Optional[AccountSnapshot]:
        """Return the cached snapshot, or None on miss or any cache failure."""
        if not self._usable():
            return None
        try:
            await self._flush_pending()
            if account_id in self._pending:
                return None
            raw = await self._backend.get(cache_key(account_id))
        except CacheUnavailableError as e:
            logger.warning(
                f"Cache get failed, falling through to store: {e}",
                extra=get_log_context(account_id=account_id),
            )
            return None

        if raw is None:
            return None
        try:
            return AccountSnapshot.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(
                f"Discarding unreadable cache entry: {e}",
                extra=get_log_context(account_id=account_id),
            )
            return None

    async def put(self, account: AccountSnapshot) -> None:
        """Store a snapshot freshly read from the durable store."""
        if not self._usable():
            return
        payload = json.dumps(account.to_dict()).encode()
        try:
            await self._flush_pending()
            await self._backend.set(cache_key(account.id), payload, self._ttl)
        except CacheUnavailableError as e:
            logger.warning(
                f"Cache put failed: {e}",
                extra=get_log_context(account_id=account.id),
            )
            return
        self._pending.discard(account.id)

    async def invalidate(self, account_id: str) -> None:
        """Remove the cached snapshot. Never raises; a missing entry is fine."""
        if self._backend is None:
            return
        if not self._backend.available:
            self._pending.add(account_id)
            logger.warning(
                "Shared cache down, invalidation deferred",
                extra=get_log_context(account_id=account_id),
            )
            return

        last_error: Optional[CacheUnavailableError] = None
        for _ in range(2):
            try:
                await self._backend.delete(cache_key(account_id))
            except CacheUnavailableError as e:
                last_error = e
                continue
            self._pending.discard(account_id)
            break
        else:
            self._pending.add(account_id)
            logger.error(
                f"Cache invalidation failed after retry, deferred: {last_error}",
                extra=get_log_context(account_id=account_id),
            )
            return

        try:
            await self._flush_pending()
        except CacheUnavailableError as e:
            logger.warning(f"Replaying pending invalidations failed: {e}")
