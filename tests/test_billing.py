"""Tests for Stripe billing: webhook events, checkout and portal."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient

from sheetgate.app.core.cache import InMemoryCache
from sheetgate.app.db.models import Plan, SubscriptionStatus
from sheetgate.app.exceptions import BadRequestError, ServiceNotConfiguredError
from sheetgate.app.services.account_cache import AccountCache, cache_key
from sheetgate.app.services.account_store import InMemoryAccountStore
from sheetgate.app.services.billing import USER_ID_METADATA_KEY, BillingService
from sheetgate.app.services.quota_ledger import QuotaLedger

from tests.support import build_test_services, make_account, make_settings


def event(event_type, obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


async def price_pro(subscription_id):
    return "price_pro"


@pytest.fixture
def backend():
    return InMemoryCache()


@pytest.fixture
def store():
    return InMemoryAccountStore(
        [make_account(usage_this_period=4, stripe_subscription_id="sub_1")]
    )


@pytest.fixture
def billing(store, backend):
    cache = AccountCache(backend)
    ledger = QuotaLedger(store, cache)
    return BillingService(make_settings(), store, cache, ledger, price_lookup=price_pro)


async def warm(store, backend):
    cache = AccountCache(backend)
    await cache.put(await store.get("user-1"))
    assert await backend.exists(cache_key("user-1"))


class TestWebhookEvents:
    @pytest.mark.asyncio
    async def test_checkout_completed_upgrades_and_resets(self, billing, store, backend):
        await warm(store, backend)

        await billing.handle_event(
            event(
                "checkout.session.completed",
                {"subscription": "sub_2", "metadata": {USER_ID_METADATA_KEY: "user-1"}},
            )
        )

        account = await store.get("user-1")
        assert account.plan == "PRO"
        assert account.period_limit == 999999
        assert account.usage_this_period == 0
        assert account.subscription_status == "active"
        assert account.stripe_subscription_id == "sub_2"
        assert not await backend.exists(cache_key("user-1"))

    @pytest.mark.asyncio
    async def test_checkout_with_unknown_price_is_ignored(self, store, backend):
        async def unknown_price(subscription_id):
            return "price_unknown"

        cache = AccountCache(backend)
        billing = BillingService(
            make_settings(), store, cache, QuotaLedger(store, cache), price_lookup=unknown_price
        )
        await billing.handle_event(
            event(
                "checkout.session.completed",
                {"subscription": "sub_2", "metadata": {USER_ID_METADATA_KEY: "user-1"}},
            )
        )
        assert (await store.get("user-1")).plan == "FREE"

    @pytest.mark.asyncio
    async def test_subscription_updated(self, billing, store, backend):
        await warm(store, backend)

        await billing.handle_event(
            event(
                "customer.subscription.updated",
                {
                    "status": "past_due",
                    "metadata": {USER_ID_METADATA_KEY: "user-1"},
                    "items": {"data": [{"price": {"id": "price_starter"}}]},
                },
            )
        )

        account = await store.get("user-1")
        assert account.plan == "STARTER"
        assert account.subscription_status == "past_due"
        assert account.effective_limit == 5
        assert not await backend.exists(cache_key("user-1"))

    @pytest.mark.asyncio
    async def test_subscription_deleted_downgrades(self, billing, store, backend):
        await billing.handle_event(
            event(
                "customer.subscription.deleted",
                {"id": "sub_1", "metadata": {USER_ID_METADATA_KEY: "user-1"}},
            )
        )

        account = await store.get("user-1")
        assert account.plan == "FREE"
        assert account.subscription_status == "canceled"
        assert account.stripe_subscription_id is None

    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(self, billing, store, backend):
        await warm(store, backend)

        await billing.handle_event(event("invoice.payment_failed", {"subscription": "sub_1"}))

        account = await store.get("user-1")
        assert account.subscription_status == "past_due"
        assert account.usage_this_period == 4
        assert not await backend.exists(cache_key("user-1"))

    @pytest.mark.asyncio
    async def test_renewal_invoice_resets_usage(self, billing, store):
        await billing.handle_event(
            event(
                "invoice.paid",
                {"subscription": "sub_1", "billing_reason": "subscription_cycle"},
            )
        )
        account = await store.get("user-1")
        assert account.usage_this_period == 0
        assert account.subscription_status == "active"

    @pytest.mark.asyncio
    async def test_first_invoice_does_not_reset(self, billing, store):
        await billing.handle_event(
            event(
                "invoice.paid",
                {"subscription": "sub_1", "billing_reason": "subscription_create"},
            )
        )
        assert (await store.get("user-1")).usage_this_period == 4

    @pytest.mark.asyncio
    async def test_handler_errors_are_swallowed(self, store, backend):
        async def broken_lookup(subscription_id):
            raise stripe.APIConnectionError("network down")

        cache = AccountCache(backend)
        billing = BillingService(
            make_settings(), store, cache, QuotaLedger(store, cache), price_lookup=broken_lookup
        )
        await billing.handle_event(
            event(
                "checkout.session.completed",
                {"subscription": "sub_2", "metadata": {USER_ID_METADATA_KEY: "user-1"}},
            )
        )
        assert (await store.get("user-1")).plan == "FREE"

    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self, billing, store):
        await billing.handle_event(event("customer.created", {}))
        assert (await store.get("user-1")).usage_this_period == 4


class TestStatusMapping:
    @pytest.mark.parametrize(
        "stripe_status,expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELED),
            ("incomplete_expired", SubscriptionStatus.CANCELED),
            (None, SubscriptionStatus.NONE),
            ("something_new", SubscriptionStatus.NONE),
        ],
    )
    def test_from_stripe(self, stripe_status, expected):
        assert SubscriptionStatus.from_stripe(stripe_status) is expected


class TestWebhookEndpoint:
    @pytest.fixture
    def client(self, store, backend, identity, make_app):
        services = build_test_services(store, backend, identity)
        services.billing = BillingService(
            services.config, store, services.account_cache, services.ledger, price_lookup=price_pro
        )
        return TestClient(make_app(services))

    def test_missing_signature_is_400(self, client):
        response = client.post("/api/billing/webhook", content=b"{}")
        assert response.status_code == 400

    def test_invalid_signature_is_400(self, client):
        with patch.object(
            stripe.Webhook,
            "construct_event",
            side_effect=stripe.SignatureVerificationError("bad signature", "t=1,v1=x"),
        ):
            response = client.post(
                "/api/billing/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
            )
        assert response.status_code == 400

    def test_verified_event_is_applied(self, client, store):
        payload = json.dumps(
            event(
                "checkout.session.completed",
                {"subscription": "sub_9", "metadata": {USER_ID_METADATA_KEY: "user-1"}},
            )
        ).encode()

        with patch.object(stripe.Webhook, "construct_event", return_value=MagicMock()) as verify:
            response = client.post(
                "/api/billing/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=ok"}
            )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        verify.assert_called_once_with(payload, "t=1,v1=ok", "whsec_test")
        assert asyncio.run(store.get("user-1")).plan == "PRO"


class TestCheckoutAndPortal:
    @pytest.mark.asyncio
    async def test_checkout_creates_customer_and_session(self, billing, store, backend):
        await warm(store, backend)
        account = await store.get("user-1")

        with patch.object(stripe.Customer, "create", return_value={"id": "cus_1"}) as create_customer, \
                patch.object(
                    stripe.checkout.Session, "create", return_value={"url": "https://checkout.test/s"}
                ) as create_session:
            url = await billing.create_checkout(account, "pro")

        assert url == "https://checkout.test/s"
        create_customer.assert_called_once()
        assert create_session.call_args.kwargs["customer"] == "cus_1"
        assert create_session.call_args.kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
        assert (await store.get("user-1")).stripe_customer_id == "cus_1"
        assert not await backend.exists(cache_key("user-1"))

    @pytest.mark.asyncio
    async def test_checkout_rejects_unknown_plan(self, billing, store):
        account = await store.get("user-1")
        with pytest.raises(BadRequestError):
            await billing.create_checkout(account, "GOLD")
        with pytest.raises(BadRequestError):
            await billing.create_checkout(account, Plan.FREE.value)

    @pytest.mark.asyncio
    async def test_checkout_requires_configuration(self, store, backend):
        cache = AccountCache(backend)
        billing = BillingService(
            make_settings(stripe_secret_key=""), store, cache, QuotaLedger(store, cache)
        )
        with pytest.raises(ServiceNotConfiguredError):
            await billing.create_checkout(await store.get("user-1"), "PRO")

    @pytest.mark.asyncio
    async def test_portal_requires_customer(self, billing, store):
        with pytest.raises(BadRequestError):
            await billing.create_portal(await store.get("user-1"))

    @pytest.mark.asyncio
    async def test_portal(self, billing, store):
        await store.update_fields("user-1", stripe_customer_id="cus_7")
        with patch.object(
            stripe.billing_portal.Session, "create", return_value={"url": "https://portal.test"}
        ) as create_portal:
            url = await billing.create_portal(await store.get("user-1"))

        assert url == "https://portal.test"
        assert create_portal.call_args.kwargs["customer"] == "cus_7"
