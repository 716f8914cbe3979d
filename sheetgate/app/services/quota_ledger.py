"""Quota ledger: the only path that charges usage.

Wraps the store's atomic ``try_consume`` with a bounded wait and keeps the
entity cache honest afterwards. A call is never retried here: a retry after
an ambiguous failure could charge twice.
"""

import asyncio
from datetime import datetime
from typing import Optional

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import Plan, SubscriptionStatus
from sheetgate.app.exceptions import StoreUnavailableError
from sheetgate.app.services.account_cache import AccountCache
from sheetgate.app.services.account_store import AccountStore, ConsumeResult

logger = get_logger(__name__)


class QuotaLedger:
    """Quota operations over an AccountStore, followed by cache invalidation.

    Args:
        store: Durable account store.
        cache: Entity cache to invalidate after each committed write.
        timeout: Upper bound in seconds on a single store operation.
    """

    def __init__(self, store: AccountStore, cache: AccountCache, timeout: float = 5.0):
        self._store = store
        self._cache = cache
        self._timeout = timeout

    async def try_consume(self, account_id: str) -> ConsumeResult:
        """Charge one unit if the account is under its effective limit.

        Raises:
            StoreUnavailableError: The store failed or did not answer in time.
                The outcome is unknown to the caller and must not be read
                as allowed or denied.
        """
        try:
            result = await asyncio.wait_for(
                self._store.try_consume(account_id), timeout=self._timeout
            )
        except asyncio.TimeoutError as e:
            # The increment may have committed before the timeout fired
            await self._cache.invalidate(account_id)
            logger.error(
                f"try_consume timed out after {self._timeout}s",
                extra=get_log_context(account_id=account_id),
            )
            raise StoreUnavailableError("try_consume", "timed out") from e
        except asyncio.CancelledError:
            # The increment may have committed before the cancellation
            await self._cache.invalidate(account_id)
            raise

        if result.allowed:
            await self._cache.invalidate(account_id)
            logger.info(
                "Usage consumed",
                extra=get_log_context(
                    account_id=account_id,
                    new_usage=result.new_usage,
                    effective_limit=result.effective_limit,
                ),
            )
        else:
            logger.info(
                "Usage limit reached",
                extra=get_log_context(
                    account_id=account_id,
                    current_usage=result.new_usage,
                    effective_limit=result.effective_limit,
                    plan=result.plan,
                    subscription_status=result.subscription_status,
                ),
            )
        return result

    async def _bounded(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(operation, "timed out") from e

    async def reset_period_if_due(self, account_id: str, now: Optional[datetime] = None) -> bool:
        """Start a new monthly period when the anchor is in an earlier month."""
        reset = await self._bounded(
            "reset_period_if_due", self._store.reset_period_if_due(account_id, now)
        )
        if reset:
            await self._cache.invalidate(account_id)
            logger.info(
                "Monthly usage reset", extra=get_log_context(account_id=account_id)
            )
        return reset

    async def reset_usage(self, account_id: str, now: Optional[datetime] = None) -> bool:
        try:
            return await self._bounded("reset_usage", self._store.reset_usage(account_id, now))
        finally:
            await self._cache.invalidate(account_id)

    async def apply_plan(
        self,
        account_id: str,
        plan: Optional[Plan],
        subscription_status: SubscriptionStatus,
        **kwargs,
    ) -> bool:
        """Apply a billing change and invalidate the cached snapshot."""
        try:
            return await self._bounded(
                "apply_plan",
                self._store.apply_plan(account_id, plan, subscription_status, **kwargs),
            )
        finally:
            await self._cache.invalidate(account_id)
