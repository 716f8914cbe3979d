"""Stripe billing integration.

Checkout and portal sessions for the paid plans, plus the webhook handler
that moves accounts between plans. Every account write made here goes
through the quota ledger or is followed by a cache invalidation.

The Stripe SDK is synchronous; calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe

from sheetgate.app.core.config import Settings
from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import AccountSnapshot, Plan, SubscriptionStatus
from sheetgate.app.exceptions import (
    BadRequestError,
    ServiceNotConfiguredError,
    UpstreamError,
)
from sheetgate.app.services.account_cache import AccountCache
from sheetgate.app.services.account_store import AccountStore
from sheetgate.app.services.quota_ledger import QuotaLedger

logger = get_logger(__name__)

USER_ID_METADATA_KEY = "supabase_user_id"

PriceLookup = Callable[[str], Awaitable[Optional[str]]]


class BillingService:
    """Stripe checkout, portal and webhook handling.

    Args:
        config: Settings carrying the Stripe keys and price ids.
        store: Durable account store.
        cache: Entity cache, invalidated after customer id writes.
        ledger: Quota ledger, used for every plan and usage change.
        price_lookup: Resolves a subscription id to its price id. Defaults
            to retrieving the subscription from Stripe.
    """

    def __init__(
        self,
        config: Settings,
        store: AccountStore,
        cache: AccountCache,
        ledger: QuotaLedger,
        price_lookup: Optional[PriceLookup] = None,
    ):
        self._secret_key = config.stripe_secret_key
        self._webhook_secret = config.stripe_webhook_secret
        self._frontend_url = config.frontend_url.rstrip("/")
        self._store = store
        self._cache = cache
        self._ledger = ledger
        self._price_lookup = price_lookup or self._retrieve_subscription_price

        self._price_ids: Dict[Plan, str] = {}
        if config.stripe_starter_price_id:
            self._price_ids[Plan.STARTER] = config.stripe_starter_price_id
        else:
            logger.warning("STRIPE_STARTER_PRICE_ID is not set")
        if config.stripe_pro_price_id:
            self._price_ids[Plan.PRO] = config.stripe_pro_price_id
        else:
            logger.warning("STRIPE_PRO_PRICE_ID is not set")
        self._plans_by_price = {price: plan for plan, price in self._price_ids.items()}

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._plans_by_price.get(price_id)

    def _require_configured(self) -> None:
        if not self.configured:
            logger.error("Stripe not configured - STRIPE_SECRET_KEY missing")
            raise ServiceNotConfiguredError(
                "Billing service is not configured. Please contact support."
            )

    async def _call(self, fn: Callable[..., Any], **params: Any) -> Any:
        return await asyncio.to_thread(fn, api_key=self._secret_key, **params)

    async def _retrieve_subscription_price(self, subscription_id: str) -> Optional[str]:
        subscription = await self._call(stripe.Subscription.retrieve, id=subscription_id)
        items = subscription["items"]["data"]
        if not items:
            return None
        return items[0]["price"]["id"]

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    async def _ensure_customer(self, account: AccountSnapshot) -> str:
        customer_id = account.stripe_customer_id
        if customer_id:
            try:
                await self._call(stripe.Customer.retrieve, id=customer_id)
                return customer_id
            except stripe.InvalidRequestError:
                logger.warning(
                    "Stored Stripe customer no longer exists, creating a new one",
                    extra=get_log_context(account_id=account.id, customer_id=customer_id),
                )

        customer = await self._call(
            stripe.Customer.create,
            email=account.email,
            metadata={USER_ID_METADATA_KEY: account.id},
        )
        await self._store.update_fields(account.id, stripe_customer_id=customer["id"])
        await self._cache.invalidate(account.id)
        return customer["id"]

    async def create_checkout(self, account: AccountSnapshot, target_plan: str) -> str:
        """Create a subscription checkout session and return its URL."""
        self._require_configured()
        if not self._price_ids:
            raise ServiceNotConfiguredError(
                "Billing plans are not configured. Please contact support."
            )

        try:
            plan = Plan(target_plan.strip().upper())
        except ValueError:
            raise BadRequestError("Invalid plan selected")
        if plan is Plan.FREE:
            raise BadRequestError("Invalid plan selected")
        price_id = self._price_ids.get(plan)
        if not price_id:
            raise ServiceNotConfiguredError(
                "The selected plan is not currently available. Please contact support."
            )

        try:
            customer_id = await self._ensure_customer(account)
            session = await self._call(
                stripe.checkout.Session.create,
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=f"{self._frontend_url}/?checkout=success",
                cancel_url=f"{self._frontend_url}/?checkout=cancelled",
                metadata={USER_ID_METADATA_KEY: account.id},
                subscription_data={"metadata": {USER_ID_METADATA_KEY: account.id}},
            )
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected checkout request: {e}")
            raise BadRequestError(e.user_message or "Invalid Stripe request")
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout failed: {e}")
            raise UpstreamError("stripe", "Failed to create checkout session") from e

        url = session["url"]
        if not url:
            raise UpstreamError("stripe", "Failed to generate checkout URL. Please try again.")
        logger.info(
            "Checkout session created",
            extra=get_log_context(account_id=account.id, plan=plan.value),
        )
        return url

    async def create_portal(self, account: AccountSnapshot) -> str:
        """Create a customer portal session and return its URL."""
        self._require_configured()
        if not account.stripe_customer_id:
            raise BadRequestError("No billing account found. Please subscribe first.")
        try:
            session = await self._call(
                stripe.billing_portal.Session.create,
                customer=account.stripe_customer_id,
                return_url=f"{self._frontend_url}/",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal failed: {e}")
            raise UpstreamError("stripe", "Failed to create portal session") from e
        return session["url"]

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe signature and return the event as plain dicts.

        Raises:
            BadRequestError: Missing or invalid signature, or malformed payload.
        """
        self._require_configured()
        if not signature:
            raise BadRequestError("Missing Stripe signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise BadRequestError(f"Webhook Error: {e}")
        return json.loads(payload)

    async def handle_event(self, event: Dict[str, Any]) -> None:
        """Apply a verified webhook event.

        Handler failures are logged and swallowed; the event is always
        acknowledged so Stripe does not redeliver it.
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        logger.info(f"Webhook received: {event_type}")
        if handler is None:
            return
        try:
            await handler(self, obj)
        except Exception:
            logger.exception(f"Webhook handler error for {event_type}")

    async def _on_checkout_completed(self, session: Dict[str, Any]) -> None:
        account_id = (session.get("metadata") or {}).get(USER_ID_METADATA_KEY)
        subscription_id = session.get("subscription")
        if not account_id or not subscription_id:
            return

        price_id = await self._price_lookup(subscription_id)
        plan = self.plan_for_price(price_id)
        if plan is None:
            logger.warning(f"Unknown price ID in checkout: {price_id}")
            return

        await self._ledger.apply_plan(
            account_id,
            plan,
            SubscriptionStatus.ACTIVE,
            subscription_id=subscription_id,
            reset_usage=True,
        )
        logger.info(
            "Account upgraded",
            extra=get_log_context(account_id=account_id, plan=plan.value),
        )

    async def _on_subscription_updated(self, subscription: Dict[str, Any]) -> None:
        account_id = (subscription.get("metadata") or {}).get(USER_ID_METADATA_KEY)
        if not account_id:
            return

        items = (subscription.get("items") or {}).get("data") or []
        price_id = items[0].get("price", {}).get("id") if items else None
        status = SubscriptionStatus.from_stripe(subscription.get("status"))

        await self._ledger.apply_plan(account_id, self.plan_for_price(price_id), status)
        logger.info(
            "Subscription updated",
            extra=get_log_context(account_id=account_id, subscription_status=status.value),
        )

    async def _on_subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        account_id = (subscription.get("metadata") or {}).get(USER_ID_METADATA_KEY)
        if not account_id:
            return

        await self._ledger.apply_plan(
            account_id,
            Plan.FREE,
            SubscriptionStatus.CANCELED,
            subscription_id=None,
        )
        logger.info(
            "Subscription canceled, account downgraded",
            extra=get_log_context(account_id=account_id),
        )

    async def _on_payment_failed(self, invoice: Dict[str, Any]) -> None:
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            return
        account = await self._store.find_by_subscription(subscription_id)
        if account is None:
            return

        await self._ledger.apply_plan(account.id, None, SubscriptionStatus.PAST_DUE)
        logger.warning("Payment failed", extra=get_log_context(account_id=account.id))

    async def _on_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        subscription_id = invoice.get("subscription")
        # Only renewal invoices start a new period
        if not subscription_id or invoice.get("billing_reason") != "subscription_cycle":
            return
        account = await self._store.find_by_subscription(subscription_id)
        if account is None:
            return

        await self._ledger.apply_plan(
            account.id, None, SubscriptionStatus.ACTIVE, reset_usage=True
        )
        logger.info(
            "Invoice paid, usage reset", extra=get_log_context(account_id=account.id)
        )

    _handlers = {
        "checkout.session.completed": _on_checkout_completed,
        "customer.subscription.updated": _on_subscription_updated,
        "customer.subscription.deleted": _on_subscription_deleted,
        "invoice.payment_failed": _on_payment_failed,
        "invoice.paid": _on_invoice_paid,
    }
