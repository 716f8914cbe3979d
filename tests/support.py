"""Fakes and builders shared by the test modules."""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx

from sheetgate.app.core.cache import InMemoryCache
from sheetgate.app.core.config import Settings
from sheetgate.app.db.models import AccountSnapshot, Plan, PLAN_LIMITS, SubscriptionStatus
from sheetgate.app.dependencies import Services, build_services
from sheetgate.app.exceptions import CacheUnavailableError
from sheetgate.app.services.account_store import InMemoryAccountStore
from sheetgate.app.services.identity import IdentityProvider, Principal


class FakeIdentityProvider(IdentityProvider):
    """Token -> principal table instead of a real identity provider."""

    def __init__(self, principals: Optional[Dict[str, Principal]] = None):
        self.principals = dict(principals or {})
        self.deleted: List[str] = []

    async def verify(self, token: str) -> Optional[Principal]:
        return self.principals.get(token)

    async def delete_principal(self, principal_id: str) -> None:
        self.deleted.append(principal_id)

    def authorize_url(self, redirect_to: str) -> str:
        return f"https://idp.test/auth/v1/authorize?redirect_to={redirect_to}"


class FlakyCache(InMemoryCache):
    """In-memory cache whose operations can be made to fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False
        self.fail_deletes = 0
        self.delete_calls = 0

    @property
    def available(self) -> bool:
        return not self.down

    async def get(self, key):
        if self.down:
            raise CacheUnavailableError("get", "connection refused")
        return await super().get(key)

    async def set(self, key, value, ttl):
        if self.down:
            raise CacheUnavailableError("set", "connection refused")
        await super().set(key, value, ttl)

    async def delete(self, key):
        self.delete_calls += 1
        if self.down:
            raise CacheUnavailableError("delete", "connection refused")
        if self.fail_deletes > 0:
            self.fail_deletes -= 1
            raise CacheUnavailableError("delete", "timeout")
        await super().delete(key)

    async def incr(self, key, window_ms):
        if self.down:
            raise CacheUnavailableError("incr", "connection refused")
        return await super().incr(key, window_ms)

    async def ping(self) -> bool:
        return not self.down


def make_account(account_id: str = "user-1", **overrides) -> AccountSnapshot:
    plan = Plan(overrides.pop("plan", Plan.FREE))
    values = dict(
        id=account_id,
        email=f"{account_id}@example.com",
        plan=plan.value,
        usage_this_period=0,
        period_limit=PLAN_LIMITS[plan],
        subscription_status=SubscriptionStatus.NONE.value,
        period_anchor=datetime.now(timezone.utc),
        smart_formatting=True,
        google_provider_token="google-access-token",
    )
    values.update(overrides)
    return AccountSnapshot(**values)


def make_settings(**overrides) -> Settings:
    values = dict(
        account_store="memory",
        cache_backend="none",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        stripe_starter_price_id="price_starter",
        stripe_pro_price_id="price_pro",
        google_client_id="google-client",
        google_client_secret="google-secret",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_test_services(
    store: InMemoryAccountStore,
    cache_backend=None,
    identity: Optional[IdentityProvider] = None,
    config: Optional[Settings] = None,
    google_handler=None,
    extractor=None,
) -> Services:
    transport = httpx.MockTransport(google_handler or (lambda request: httpx.Response(404)))
    return build_services(
        config or make_settings(),
        store=store,
        cache_backend=cache_backend,
        identity=identity or FakeIdentityProvider(),
        http_client=httpx.AsyncClient(transport=transport),
        extractor=extractor,
        use_configured_cache=False,
    )


