"""Tests for the SQLAlchemy account store on SQLite (aiosqlite)."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from sheetgate.app.db.async_session import (
    close_async_engine,
    get_async_session_maker,
    init_async_db,
)
from sheetgate.app.db.models import PAST_DUE_LIMIT, ActivityRecord, Plan, SubscriptionStatus
from sheetgate.app.exceptions import StoreUnavailableError
from sheetgate.app.services.account_store import ACTIVITY_HISTORY_LIMIT, SqlAlchemyAccountStore


@pytest_asyncio.fixture
async def store(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'accounts.db'}"
    await init_async_db(url)
    yield SqlAlchemyAccountStore(get_async_session_maker(url))
    await close_async_engine()


async def provision(store, account_id="user-1", usage=0, **plan_kwargs):
    await store.provision(account_id, f"{account_id}@example.com", google_provider_token="g-token")
    if plan_kwargs:
        await store.apply_plan(account_id, **plan_kwargs)
    # Bring usage up through the ledger primitive itself
    for _ in range(usage):
        result = await store.try_consume(account_id)
        assert result.allowed


class TestProvision:
    @pytest.mark.asyncio
    async def test_creates_free_account_with_zero_usage(self, store):
        account, created = await store.provision(
            "user-1", "a@example.com", google_provider_token="g1", google_provider_refresh_token="r1"
        )

        assert created is True
        assert account.plan == "FREE"
        assert account.usage_this_period == 0
        assert account.period_limit == 5
        assert account.subscription_status == "none"
        assert account.period_anchor.tzinfo is not None
        assert await store.get_refresh_token("user-1") == "r1"

    @pytest.mark.asyncio
    async def test_existing_account_only_refreshes_tokens(self, store):
        await provision(store, usage=2)

        account, created = await store.provision(
            "user-1", "other@example.com", google_provider_token="g2"
        )

        assert created is False
        assert account.usage_this_period == 2
        assert account.email == "user-1@example.com"
        assert account.google_provider_token == "g2"


class TestTryConsume:
    @pytest.mark.asyncio
    async def test_increments_until_limit(self, store):
        await provision(store)

        results = [await store.try_consume("user-1") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.new_usage for r in results] == [1, 2, 3, 4, 5, 5]
        assert (await store.get("user-1")).usage_this_period == 5

    @pytest.mark.asyncio
    async def test_concurrent_calls_never_exceed_limit(self, store):
        await provision(store)
        with patch.dict("sheetgate.app.services.account_store.PLAN_LIMITS", {Plan.STARTER: 10}):
            await store.apply_plan("user-1", Plan.STARTER, SubscriptionStatus.ACTIVE)
        for _ in range(7):
            assert (await store.try_consume("user-1")).allowed

        results = await asyncio.gather(*(store.try_consume("user-1") for _ in range(20)))

        assert sum(1 for r in results if r.allowed) == 3
        assert all(r.effective_limit == 10 for r in results)
        assert (await store.get("user-1")).usage_this_period == 10

    @pytest.mark.asyncio
    async def test_past_due_overrides_plan_limit(self, store):
        await provision(store, plan=Plan.PRO, subscription_status=SubscriptionStatus.ACTIVE)
        for _ in range(5):
            assert (await store.try_consume("user-1")).allowed
        await store.apply_plan("user-1", None, SubscriptionStatus.PAST_DUE)

        result = await store.try_consume("user-1")

        assert result.allowed is False
        assert result.effective_limit == PAST_DUE_LIMIT
        assert result.new_usage == 5
        assert result.plan == "PRO"

    @pytest.mark.asyncio
    async def test_missing_account(self, store):
        result = await store.try_consume("ghost")
        assert result.allowed is False
        assert result.new_usage == 0
        assert result.effective_limit == 0

    @pytest.mark.asyncio
    async def test_failed_commit_charges_nothing(self, store):
        await provision(store, usage=1)

        with patch.object(
            AsyncSession, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk I/O error"))
        ):
            with pytest.raises(StoreUnavailableError):
                await store.try_consume("user-1")

        assert (await store.get("user-1")).usage_this_period == 1


class TestAdministrativeUpdates:
    @pytest.mark.asyncio
    async def test_apply_plan_with_reset(self, store):
        await provision(store, usage=3)
        now = datetime(2026, 5, 10, tzinfo=timezone.utc)

        changed = await store.apply_plan(
            "user-1",
            Plan.STARTER,
            SubscriptionStatus.ACTIVE,
            subscription_id="sub_123",
            reset_usage=True,
            now=now,
        )

        assert changed is True
        account = await store.get("user-1")
        assert account.plan == "STARTER"
        assert account.period_limit == 250
        assert account.usage_this_period == 0
        assert account.stripe_subscription_id == "sub_123"
        assert account.period_anchor == now
        assert (await store.find_by_subscription("sub_123")).id == "user-1"

    @pytest.mark.asyncio
    async def test_apply_plan_missing_account(self, store):
        assert await store.apply_plan("ghost", Plan.PRO, SubscriptionStatus.ACTIVE) is False

    @pytest.mark.asyncio
    async def test_reset_period_if_due(self, store):
        await provision(store)
        now = datetime(2026, 6, 3, tzinfo=timezone.utc)
        await store.apply_plan(
            "user-1", None, SubscriptionStatus.NONE, reset_usage=True, now=now - timedelta(days=40)
        )
        for _ in range(4):
            await store.try_consume("user-1")

        assert await store.reset_period_if_due("user-1", now) is True
        account = await store.get("user-1")
        assert account.usage_this_period == 0
        assert account.period_anchor == now

        assert await store.reset_period_if_due("user-1", now) is False

    @pytest.mark.asyncio
    async def test_reset_period_not_due_within_month(self, store):
        await provision(store, usage=2)
        now = datetime.now(timezone.utc)
        assert await store.reset_period_if_due("user-1", now) is False
        assert (await store.get("user-1")).usage_this_period == 2

    @pytest.mark.asyncio
    async def test_reset_usage(self, store):
        await provision(store, usage=5)
        assert await store.reset_usage("user-1") is True
        assert (await store.get("user-1")).usage_this_period == 0

    @pytest.mark.asyncio
    async def test_update_fields(self, store):
        await provision(store)
        account = await store.update_fields("user-1", smart_formatting=False)
        assert account.smart_formatting is False

        await store.update_fields("user-1", google_provider_refresh_token="r2")
        assert await store.get_refresh_token("user-1") == "r2"

    @pytest.mark.asyncio
    async def test_update_fields_rejects_usage(self, store):
        await provision(store)
        with pytest.raises(ValueError):
            await store.update_fields("user-1", usage_this_period=0)

    @pytest.mark.asyncio
    async def test_update_fields_missing_account(self, store):
        assert await store.update_fields("ghost", smart_formatting=False) is None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await provision(store)
        assert await store.delete("user-1") is True
        assert await store.get("user-1") is None
        assert await store.delete("user-1") is False

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True


def activity(account_id="user-1", instruction="rows", created_at=None, **overrides):
    values = dict(
        account_id=account_id,
        sheet_name=f"{instruction} - 2026-04-09",
        spreadsheet_url="https://docs.google.com/spreadsheets/d/sheet-123",
        spreadsheet_id="sheet-123",
        item_count=2,
        instruction=instruction,
    )
    if created_at is not None:
        values["created_at"] = created_at
    values.update(overrides)
    return ActivityRecord(**values)


class TestActivities:
    @pytest.mark.asyncio
    async def test_record_and_list_newest_first(self, store):
        await provision(store)
        base = datetime(2026, 4, 1, tzinfo=timezone.utc)
        for day in range(3):
            await store.record_activity(
                activity(instruction=f"day {day}", created_at=base + timedelta(days=day))
            )

        activities = await store.list_activities("user-1")

        assert [a.instruction for a in activities] == ["day 2", "day 1", "day 0"]
        assert all(a.id is not None for a in activities)
        assert activities[0].created_at.tzinfo is not None
        assert activities[0].to_dict()["timestamp"] == "2026-04-03T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_list_is_bounded_and_per_account(self, store):
        await provision(store)
        await provision(store, "user-2")
        for _ in range(ACTIVITY_HISTORY_LIMIT + 5):
            await store.record_activity(activity())
        await store.record_activity(activity("user-2"))

        assert len(await store.list_activities("user-1")) == ACTIVITY_HISTORY_LIMIT
        assert len(await store.list_activities("user-2")) == 1

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await provision(store)
        await store.record_activity(activity())
        await store.record_activity(activity())

        assert await store.clear_activities("user-1") == 2
        assert await store.list_activities("user-1") == []
        assert await store.clear_activities("user-1") == 0

    @pytest.mark.asyncio
    async def test_delete_account_removes_history(self, store):
        await provision(store)
        await store.record_activity(activity())

        assert await store.delete("user-1") is True
        assert await store.list_activities("user-1") == []
