"""Service wiring.

All collaborators (store, shared cache, limiter, identity provider,
integrations) are constructed once per application and kept on
``app.state.services``. Nothing reaches for a module-level client, so tests
build a ``Services`` with fakes and hand it to ``create_app``.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx
from fastapi import Request

from sheetgate.app.core.cache import CacheBackend, build_cache_backend
from sheetgate.app.core.config import Settings
from sheetgate.app.core.http_client import create_http_client
from sheetgate.app.core.logging import get_logger
from sheetgate.app.db.async_session import get_async_session_maker, init_async_db
from sheetgate.app.middleware.rate_limit import (
    DistributedRateLimiter,
    InMemoryRateLimiter,
    RateLimitScope,
    build_scopes,
)
from sheetgate.app.services.account_cache import AccountCache
from sheetgate.app.services.account_store import (
    AccountStore,
    InMemoryAccountStore,
    SqlAlchemyAccountStore,
)
from sheetgate.app.services.billing import BillingService
from sheetgate.app.services.extraction import Extractor, UnconfiguredExtractor
from sheetgate.app.services.identity import IdentityProvider, SupabaseIdentityProvider
from sheetgate.app.services.quota_ledger import QuotaLedger
from sheetgate.app.services.sheets import SheetsExporter

logger = get_logger(__name__)


@dataclass
class Services:
    """Everything a request handler may depend on."""

    config: Settings
    store: AccountStore
    cache_backend: Optional[CacheBackend]
    account_cache: AccountCache
    ledger: QuotaLedger
    rate_limiter: DistributedRateLimiter
    identity: IdentityProvider
    billing: BillingService
    sheets: SheetsExporter
    extractor: Extractor
    http_client: Optional[httpx.AsyncClient] = None
    scopes: Dict[str, RateLimitScope] = field(default_factory=dict)

    async def close(self) -> None:
        if self.cache_backend is not None:
            await self.cache_backend.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        await self.store.close()


def build_services(
    config: Settings,
    *,
    store: Optional[AccountStore] = None,
    cache_backend: Optional[CacheBackend] = None,
    identity: Optional[IdentityProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    extractor: Optional[Extractor] = None,
    use_configured_cache: bool = True,
) -> Services:
    """Construct the service graph.

    Any collaborator passed in is used as-is; the rest are built from
    ``config``. Pass ``use_configured_cache=False`` with no
    ``cache_backend`` to run with the shared store disabled.
    """
    if http_client is None:
        http_client = create_http_client(config)

    if store is None:
        if config.account_store == "memory":
            logger.warning("Using in-memory account store (single process only)")
            store = InMemoryAccountStore()
        else:
            store = SqlAlchemyAccountStore(
                get_async_session_maker(config.database_url),
                lock_timeout_ms=config.db_lock_timeout_ms,
            )

    if cache_backend is None and use_configured_cache:
        cache_backend = build_cache_backend(config)

    account_cache = AccountCache(cache_backend, ttl=config.account_cache_ttl_seconds)
    ledger = QuotaLedger(store, account_cache, timeout=config.ledger_timeout_seconds)
    rate_limiter = DistributedRateLimiter(
        cache_backend,
        InMemoryRateLimiter(max_entries=config.rate_limit_local_max_entries),
    )

    if identity is None:
        identity = SupabaseIdentityProvider(
            http_client,
            config.supabase_url,
            config.supabase_anon_key,
            config.supabase_service_role_key,
        )

    return Services(
        config=config,
        store=store,
        cache_backend=cache_backend,
        account_cache=account_cache,
        ledger=ledger,
        rate_limiter=rate_limiter,
        identity=identity,
        billing=BillingService(config, store, account_cache, ledger),
        sheets=SheetsExporter(
            http_client,
            store,
            account_cache,
            config.google_client_id,
            config.google_client_secret,
        ),
        extractor=extractor or UnconfiguredExtractor(),
        http_client=http_client,
        scopes=build_scopes(config),
    )


async def init_storage(services: Services) -> None:
    """Create tables when running on the SQL store."""
    if isinstance(services.store, SqlAlchemyAccountStore):
        await init_async_db(services.config.database_url)


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's service graph."""
    return request.app.state.services
