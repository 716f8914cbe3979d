"""Durable account store.

The account row is the only source of truth for plan and usage. Every
mutation goes through this module; usage is only ever incremented by
``try_consume``, which performs check and increment as one conditional
statement so concurrent callers in any number of processes cannot push
usage past the effective limit.
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import case, delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import (
    PAST_DUE_LIMIT,
    PLAN_LIMITS,
    Account,
    AccountSnapshot,
    Activity,
    ActivityRecord,
    Plan,
    SubscriptionStatus,
    effective_limit,
    start_of_month,
    as_utc,
    utcnow,
)
from sheetgate.app.exceptions import StoreUnavailableError

logger = get_logger(__name__)

# Fields that administrative updates may touch. Usage and plan have their own
# operations.
UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "smart_formatting",
        "stripe_customer_id",
        "stripe_subscription_id",
        "google_provider_token",
        "google_provider_refresh_token",
    }
)

# Newest entries returned by list_activities
ACTIVITY_HISTORY_LIMIT = 50

_UNSET: Any = object()


@dataclass
class ConsumeResult:
    """Outcome of one ``try_consume`` call."""

    allowed: bool
    new_usage: int
    effective_limit: int
    plan: str
    subscription_status: str

    @classmethod
    def missing(cls) -> "ConsumeResult":
        # No account row: refused with defaulted fields, not an error
        return cls(
            allowed=False,
            new_usage=0,
            effective_limit=0,
            plan=Plan.FREE.value,
            subscription_status=SubscriptionStatus.NONE.value,
        )

    def usage_payload(self) -> dict[str, Any]:
        return {"current": self.new_usage, "limit": self.effective_limit}


class AccountStore(ABC):
    """Capability interface over the durable account store."""

    @abstractmethod
    async def get(self, account_id: str) -> AccountSnapshot | None:
        """Point lookup by id."""

    @abstractmethod
    async def try_consume(self, account_id: str) -> ConsumeResult:
        """Consume one unit of quota if the account is under its effective limit."""

    @abstractmethod
    async def provision(
        self,
        account_id: str,
        email: str | None,
        google_provider_token: str | None = None,
        google_provider_refresh_token: str | None = None,
    ) -> tuple[AccountSnapshot, bool]:
        """Create a FREE account with zero usage, or refresh tokens of an existing one.

        Returns:
            Tuple of (account, created).
        """

    @abstractmethod
    async def update_fields(self, account_id: str, **fields: Any) -> AccountSnapshot | None:
        """Update whitelisted administrative fields. Returns None if the account is missing."""

    @abstractmethod
    async def apply_plan(
        self,
        account_id: str,
        plan: Plan | None,
        subscription_status: SubscriptionStatus,
        *,
        subscription_id: str | None = _UNSET,
        reset_usage: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Apply a billing change.

        ``plan=None`` keeps the current plan and limit. ``reset_usage`` starts
        a new period anchored at ``now``.
        """

    @abstractmethod
    async def reset_usage(self, account_id: str, now: datetime | None = None) -> bool:
        """Set usage to zero and start a new period."""

    @abstractmethod
    async def reset_period_if_due(self, account_id: str, now: datetime | None = None) -> bool:
        """Roll the period over if the anchor lies in an earlier calendar month.

        Conditional on the anchor, so concurrent callers reset at most once.
        """

    @abstractmethod
    async def find_by_subscription(self, subscription_id: str) -> AccountSnapshot | None:
        """Find the account holding a billing subscription."""

    @abstractmethod
    async def get_refresh_token(self, account_id: str) -> str | None:
        """Return the stored Google refresh token, which snapshots never carry."""

    @abstractmethod
    async def record_activity(self, activity: ActivityRecord) -> ActivityRecord:
        """Append one export to the account's history."""

    @abstractmethod
    async def list_activities(
        self, account_id: str, limit: int = ACTIVITY_HISTORY_LIMIT
    ) -> list[ActivityRecord]:
        """Most recent history entries, newest first."""

    @abstractmethod
    async def clear_activities(self, account_id: str) -> int:
        """Delete the account's history. Returns the number of entries removed."""

    @abstractmethod
    async def delete(self, account_id: str) -> bool:
        """Delete the account row and its history. Returns False if it did not exist."""

    @abstractmethod
    async def ping(self) -> bool:
        """Connectivity check. Never raises."""

    async def close(self) -> None:
        """Release store resources."""


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")


def _plan_values(
    plan: Plan | None,
    subscription_status: SubscriptionStatus,
    subscription_id: str | None,
    reset_usage: bool,
    now: datetime,
) -> dict[str, Any]:
    values: dict[str, Any] = {"subscription_status": subscription_status.value}
    if plan is not None:
        values["plan"] = plan.value
        values["period_limit"] = PLAN_LIMITS[plan]
    if subscription_id is not _UNSET:
        values["stripe_subscription_id"] = subscription_id
    if reset_usage:
        values["usage_this_period"] = 0
        values["period_anchor"] = now
    return values


class SqlAlchemyAccountStore(AccountStore):
    """Account store on a relational database via SQLAlchemy async.

    ``try_consume`` is a single ``UPDATE ... WHERE usage < effective_limit
    RETURNING``: the row lock taken by the UPDATE serializes concurrent
    consumers and the predicate is re-evaluated against the committed row
    once the lock is granted. On PostgreSQL the wait for that lock is
    bounded with ``SET LOCAL lock_timeout``.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        lock_timeout_ms: int = 3000,
    ):
        self._session_maker = session_maker
        self._lock_timeout_ms = lock_timeout_ms

    @staticmethod
    def _is_postgres(session: AsyncSession) -> bool:
        return session.get_bind().dialect.name == "postgresql"

    async def get(self, account_id: str) -> AccountSnapshot | None:
        try:
            async with self._session_maker() as session:
                account = await session.get(Account, account_id)
                return account.to_snapshot() if account is not None else None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("get", str(e)) from e

    async def try_consume(self, account_id: str) -> ConsumeResult:
        limit_expr = case(
            (
                Account.subscription_status == SubscriptionStatus.PAST_DUE.value,
                PAST_DUE_LIMIT,
            ),
            else_=Account.period_limit,
        )
        try:
            async with self._session_maker() as session:
                try:
                    if self._is_postgres(session):
                        await session.execute(
                            text(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
                        )

                    result = await session.execute(
                        update(Account)
                        .where(
                            Account.id == account_id,
                            Account.usage_this_period < limit_expr,
                        )
                        .values(
                            usage_this_period=Account.usage_this_period + 1,
                            updated_at=utcnow(),
                        )
                        .returning(
                            Account.usage_this_period,
                            Account.period_limit,
                            Account.plan,
                            Account.subscription_status,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    row = result.fetchone()

                    if row is None:
                        # Refused or missing; read the current state for the response
                        result = await session.execute(
                            select(
                                Account.usage_this_period,
                                Account.period_limit,
                                Account.plan,
                                Account.subscription_status,
                            ).where(Account.id == account_id)
                        )
                        current = result.fetchone()
                        await session.rollback()
                        if current is None:
                            return ConsumeResult.missing()
                        usage, period_limit, plan, status = current
                        return ConsumeResult(
                            allowed=False,
                            new_usage=usage,
                            effective_limit=effective_limit(period_limit, status),
                            plan=plan,
                            subscription_status=status,
                        )

                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                f"try_consume failed, no usage charged: {e}",
                extra=get_log_context(account_id=account_id),
            )
            raise StoreUnavailableError("try_consume", str(e)) from e

        new_usage, period_limit, plan, status = row
        return ConsumeResult(
            allowed=True,
            new_usage=new_usage,
            effective_limit=effective_limit(period_limit, status),
            plan=plan,
            subscription_status=status,
        )

    async def _update(self, operation: str, stmt) -> int:
        try:
            async with self._session_maker() as session:
                try:
                    result = await session.execute(
                        stmt.execution_options(synchronize_session=False)
                    )
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(operation, str(e)) from e

    async def provision(
        self,
        account_id: str,
        email: str | None,
        google_provider_token: str | None = None,
        google_provider_refresh_token: str | None = None,
    ) -> tuple[AccountSnapshot, bool]:
        try:
            async with self._session_maker() as session:
                try:
                    account = await session.get(Account, account_id)
                    created = account is None
                    if created:
                        now = utcnow()
                        account = Account(
                            id=account_id,
                            email=email,
                            plan=Plan.FREE.value,
                            usage_this_period=0,
                            period_limit=PLAN_LIMITS[Plan.FREE],
                            subscription_status=SubscriptionStatus.NONE.value,
                            period_anchor=now,
                            smart_formatting=True,
                            google_provider_token=google_provider_token,
                            google_provider_refresh_token=google_provider_refresh_token,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(account)
                    else:
                        if google_provider_token:
                            account.google_provider_token = google_provider_token
                        if google_provider_refresh_token:
                            account.google_provider_refresh_token = google_provider_refresh_token
                        account.updated_at = utcnow()
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
                return account.to_snapshot(), created
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("provision", str(e)) from e

    async def update_fields(self, account_id: str, **fields: Any) -> AccountSnapshot | None:
        _check_fields(fields)
        if fields:
            fields["updated_at"] = utcnow()
            await self._update(
                "update_fields",
                update(Account).where(Account.id == account_id).values(**fields),
            )
        return await self.get(account_id)

    async def apply_plan(
        self,
        account_id: str,
        plan: Plan | None,
        subscription_status: SubscriptionStatus,
        *,
        subscription_id: str | None = _UNSET,
        reset_usage: bool = False,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        values = _plan_values(plan, subscription_status, subscription_id, reset_usage, now)
        values["updated_at"] = now
        count = await self._update(
            "apply_plan",
            update(Account).where(Account.id == account_id).values(**values),
        )
        return count > 0

    async def reset_usage(self, account_id: str, now: datetime | None = None) -> bool:
        now = now or utcnow()
        count = await self._update(
            "reset_usage",
            update(Account)
            .where(Account.id == account_id)
            .values(usage_this_period=0, period_anchor=now, updated_at=now),
        )
        return count > 0

    async def reset_period_if_due(self, account_id: str, now: datetime | None = None) -> bool:
        now = as_utc(now or utcnow())
        count = await self._update(
            "reset_period_if_due",
            update(Account)
            .where(
                Account.id == account_id,
                Account.period_anchor < start_of_month(now),
            )
            .values(usage_this_period=0, period_anchor=now, updated_at=now),
        )
        return count > 0

    async def find_by_subscription(self, subscription_id: str) -> AccountSnapshot | None:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(Account).where(Account.stripe_subscription_id == subscription_id)
                )
                account = result.scalars().first()
                return account.to_snapshot() if account is not None else None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("find_by_subscription", str(e)) from e

    async def get_refresh_token(self, account_id: str) -> str | None:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(Account.google_provider_refresh_token).where(Account.id == account_id)
                )
                return result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("get_refresh_token", str(e)) from e

    async def record_activity(self, activity: ActivityRecord) -> ActivityRecord:
        try:
            async with self._session_maker() as session:
                try:
                    row = Activity(
                        account_id=activity.account_id,
                        sheet_name=activity.sheet_name,
                        spreadsheet_url=activity.spreadsheet_url,
                        spreadsheet_id=activity.spreadsheet_id,
                        item_count=activity.item_count,
                        instruction=activity.instruction,
                        created_at=activity.created_at,
                    )
                    session.add(row)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
                return row.to_record()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("record_activity", str(e)) from e

    async def list_activities(
        self, account_id: str, limit: int = ACTIVITY_HISTORY_LIMIT
    ) -> list[ActivityRecord]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(Activity)
                    .where(Activity.account_id == account_id)
                    .order_by(Activity.created_at.desc(), Activity.id.desc())
                    .limit(limit)
                )
                return [row.to_record() for row in result.scalars()]
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("list_activities", str(e)) from e

    async def clear_activities(self, account_id: str) -> int:
        return await self._update(
            "clear_activities", delete(Activity).where(Activity.account_id == account_id)
        )

    async def delete(self, account_id: str) -> bool:
        try:
            async with self._session_maker() as session:
                try:
                    await session.execute(
                        delete(Activity).where(Activity.account_id == account_id)
                    )
                    result = await session.execute(
                        delete(Account).where(Account.id == account_id)
                    )
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
                return result.rowcount > 0
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError("delete", str(e)) from e

    async def ping(self) -> bool:
        try:
            async with self._session_maker() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Account store ping failed: {e}")
            return False


class InMemoryAccountStore(AccountStore):
    """Single-process account store.

    A per-account ``asyncio.Lock`` provides the row exclusivity. The new
    usage is written only after ``_persist`` succeeds, so a failed write
    leaves the account untouched.
    """

    def __init__(self, accounts: Iterable[AccountSnapshot] | None = None):
        self._accounts: dict[str, AccountSnapshot] = {}
        self._refresh_tokens: dict[str, str] = {}
        self._activities: dict[str, list[ActivityRecord]] = {}
        self._next_activity_id = 1
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()
        for account in accounts or ():
            self._accounts[account.id] = account

    async def _lock_for(self, account_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            return self._locks.setdefault(account_id, asyncio.Lock())

    async def _persist(self, account: AccountSnapshot) -> None:
        # Suspension point between read and write, like a database round trip
        await asyncio.sleep(0)
        self._accounts[account.id] = account

    async def _mutate(self, account_id: str, **changes: Any) -> AccountSnapshot | None:
        lock = await self._lock_for(account_id)
        async with lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            updated = dataclasses.replace(account, **changes)
            await self._persist(updated)
            return updated

    async def get(self, account_id: str) -> AccountSnapshot | None:
        account = self._accounts.get(account_id)
        return dataclasses.replace(account) if account is not None else None

    async def try_consume(self, account_id: str) -> ConsumeResult:
        lock = await self._lock_for(account_id)
        async with lock:
            account = self._accounts.get(account_id)
            if account is None:
                return ConsumeResult.missing()

            limit = account.effective_limit
            if account.usage_this_period >= limit:
                return ConsumeResult(
                    allowed=False,
                    new_usage=account.usage_this_period,
                    effective_limit=limit,
                    plan=account.plan,
                    subscription_status=account.subscription_status,
                )

            updated = dataclasses.replace(
                account, usage_this_period=account.usage_this_period + 1
            )
            try:
                await self._persist(updated)
            except Exception as e:
                raise StoreUnavailableError("try_consume", str(e)) from e

            return ConsumeResult(
                allowed=True,
                new_usage=updated.usage_this_period,
                effective_limit=limit,
                plan=updated.plan,
                subscription_status=updated.subscription_status,
            )

    async def provision(
        self,
        account_id: str,
        email: str | None,
        google_provider_token: str | None = None,
        google_provider_refresh_token: str | None = None,
    ) -> tuple[AccountSnapshot, bool]:
        lock = await self._lock_for(account_id)
        async with lock:
            account = self._accounts.get(account_id)
            created = account is None
            if created:
                account = AccountSnapshot(
                    id=account_id,
                    email=email,
                    plan=Plan.FREE.value,
                    usage_this_period=0,
                    period_limit=PLAN_LIMITS[Plan.FREE],
                    subscription_status=SubscriptionStatus.NONE.value,
                    period_anchor=utcnow(),
                    smart_formatting=True,
                    google_provider_token=google_provider_token,
                )
            elif google_provider_token:
                account = dataclasses.replace(account, google_provider_token=google_provider_token)
            await self._persist(account)
            if google_provider_refresh_token:
                self._refresh_tokens[account_id] = google_provider_refresh_token
            return dataclasses.replace(account), created

    async def update_fields(self, account_id: str, **fields: Any) -> AccountSnapshot | None:
        _check_fields(fields)
        refresh_token = fields.pop("google_provider_refresh_token", None)
        if refresh_token is not None and account_id in self._accounts:
            self._refresh_tokens[account_id] = refresh_token
        if not fields:
            return await self.get(account_id)
        return await self._mutate(account_id, **fields)

    async def apply_plan(
        self,
        account_id: str,
        plan: Plan | None,
        subscription_status: SubscriptionStatus,
        *,
        subscription_id: str | None = _UNSET,
        reset_usage: bool = False,
        now: datetime | None = None,
    ) -> bool:
        values = _plan_values(
            plan, subscription_status, subscription_id, reset_usage, now or utcnow()
        )
        return await self._mutate(account_id, **values) is not None

    async def reset_usage(self, account_id: str, now: datetime | None = None) -> bool:
        updated = await self._mutate(
            account_id, usage_this_period=0, period_anchor=now or utcnow()
        )
        return updated is not None

    async def reset_period_if_due(self, account_id: str, now: datetime | None = None) -> bool:
        now = as_utc(now or utcnow())
        lock = await self._lock_for(account_id)
        async with lock:
            account = self._accounts.get(account_id)
            if account is None or as_utc(account.period_anchor) >= start_of_month(now):
                return False
            await self._persist(
                dataclasses.replace(account, usage_this_period=0, period_anchor=now)
            )
            return True

    async def find_by_subscription(self, subscription_id: str) -> AccountSnapshot | None:
        for account in self._accounts.values():
            if account.stripe_subscription_id == subscription_id:
                return dataclasses.replace(account)
        return None

    async def get_refresh_token(self, account_id: str) -> str | None:
        return self._refresh_tokens.get(account_id)

    async def delete(self, account_id: str) -> bool:
        lock = await self._lock_for(account_id)
        async with lock:
            self._refresh_tokens.pop(account_id, None)
            self._activities.pop(account_id, None)
            return self._accounts.pop(account_id, None) is not None

    async def record_activity(self, activity: ActivityRecord) -> ActivityRecord:
        stored = dataclasses.replace(activity, id=self._next_activity_id)
        self._next_activity_id += 1
        self._activities.setdefault(activity.account_id, []).append(stored)
        return dataclasses.replace(stored)

    async def list_activities(
        self, account_id: str, limit: int = ACTIVITY_HISTORY_LIMIT
    ) -> list[ActivityRecord]:
        entries = sorted(
            self._activities.get(account_id, ()),
            key=lambda a: (as_utc(a.created_at), a.id),
            reverse=True,
        )
        return [dataclasses.replace(a) for a in entries[:limit]]

    async def clear_activities(self, account_id: str) -> int:
        return len(self._activities.pop(account_id, ()))

    async def ping(self) -> bool:
        return True
