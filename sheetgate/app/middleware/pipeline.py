"""Per-request pipeline: identify, rate limit, authenticate, hydrate.

Each stage produces a typed result and the next stage only runs if the
previous one succeeded; the first failure raises the matching
GatewayException and ends the request. The endpoint body is the final
stage and receives the assembled ``RequestContext``.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Request, Response

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import AccountSnapshot, as_utc, start_of_month
from sheetgate.app.dependencies import Services, get_services
from sheetgate.app.exceptions import (
    ProfileNotFoundError,
    RateLimitedError,
    StoreUnavailableError,
    UnauthorizedError,
    UpstreamError,
)
from sheetgate.app.middleware.rate_limit import (
    RateLimitResult,
    RateLimitScope,
    identity_from_request,
)
from sheetgate.app.middleware.request_id import get_request_id
from sheetgate.app.services.identity import Principal

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Network-level identity, available before authentication."""
    rate_limit_identity: str
    bearer_token: Optional[str]
    client_address: Optional[str]


@dataclass(frozen=True)
class RateLimitDecision:
    scope: RateLimitScope
    result: RateLimitResult
    # False when the general middleware already counted this request
    counted_here: bool = True


@dataclass(frozen=True)
class AuthenticatedCaller:
    principal: Principal
    token: str

    @property
    def account_id(self) -> str:
        return self.principal.id


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    caller: CallerIdentity
    rate_limit: RateLimitDecision
    auth: Optional[AuthenticatedCaller] = None
    account: Optional[AccountSnapshot] = None

    @property
    def account_id(self) -> Optional[str]:
        return self.auth.account_id if self.auth is not None else None


async def verify_token(services: Services, token: str) -> Optional[Principal]:
    """Verify a token with the identity provider within the stage timeout."""
    try:
        return await asyncio.wait_for(
            services.identity.verify(token),
            timeout=services.config.stage_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise UpstreamError("identity", "Identity provider timed out") from e


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[7:].strip()


class RequestPipeline:
    """Runs the pre-execution stages for one request."""

    def __init__(self, services: Services):
        self._services = services
        self._stage_timeout = services.config.stage_timeout_seconds

    def identify(self, request: Request) -> CallerIdentity:
        return CallerIdentity(
            rate_limit_identity=identity_from_request(request),
            bearer_token=_bearer_token(request),
            client_address=request.client.host if request.client else None,
        )

    async def rate_limit(
        self, request: Request, caller: CallerIdentity, scope_name: str
    ) -> RateLimitDecision:
        scope = self._services.scopes[scope_name]
        already_counted = getattr(request.state, "rate_limits", {}).get(scope.name)
        if already_counted is not None:
            return RateLimitDecision(scope, already_counted, counted_here=False)

        result = await self._services.rate_limiter.check(scope, caller.rate_limit_identity)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    request_id=get_request_id(request),
                    scope=scope.name,
                    path=request.url.path,
                    method=request.method,
                ),
            )
            raise RateLimitedError(scope.name, result)
        return RateLimitDecision(scope, result)

    async def authenticate(self, request: Request, caller: CallerIdentity) -> AuthenticatedCaller:
        if caller.bearer_token is None:
            raise UnauthorizedError("Unauthorized: Missing or invalid authorization header")
        if not caller.bearer_token:
            raise UnauthorizedError("Unauthorized: Missing access token")

        principal = await verify_token(self._services, caller.bearer_token)

        if principal is None:
            logger.warning(
                "Invalid token",
                extra=get_log_context(request_id=get_request_id(request)),
            )
            raise UnauthorizedError()
        return AuthenticatedCaller(principal=principal, token=caller.bearer_token)

    async def _load_account(self, account_id: str) -> Optional[AccountSnapshot]:
        try:
            return await asyncio.wait_for(
                self._services.store.get(account_id), timeout=self._stage_timeout
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError("get", "timed out") from e

    async def hydrate(self, auth: AuthenticatedCaller) -> AccountSnapshot:
        """Cache first, then the durable store; applies the monthly rollover."""
        account_id = auth.account_id
        cache = self._services.account_cache

        account = await cache.get(account_id)
        if account is None:
            account = await self._load_account(account_id)
            if account is None:
                logger.error(
                    "Account profile missing for authenticated caller",
                    extra=get_log_context(account_id=account_id),
                )
                raise ProfileNotFoundError(account_id)
            await cache.put(account)

        now = datetime.now(timezone.utc)
        if as_utc(account.period_anchor) < start_of_month(now):
            if await self._services.ledger.reset_period_if_due(account_id, now):
                refreshed = await self._load_account(account_id)
                if refreshed is None:
                    raise ProfileNotFoundError(account_id)
                account = refreshed
                await cache.put(account)
        return account

    async def run(
        self,
        request: Request,
        scope_name: str,
        authenticate: bool = True,
        hydrate: bool = True,
    ) -> RequestContext:
        caller = self.identify(request)
        decision = await self.rate_limit(request, caller, scope_name)

        auth = None
        account = None
        if authenticate:
            auth = await self.authenticate(request, caller)
            if hydrate:
                account = await self.hydrate(auth)

        return RequestContext(
            request_id=get_request_id(request),
            caller=caller,
            rate_limit=decision,
            auth=auth,
            account=account,
        )


def pipeline_dependency(scope_name: str, authenticate: bool = True, hydrate: bool = True):
    """Build a FastAPI dependency that runs the pipeline for ``scope_name``.

    Writes the scope's rate limit headers on the response. For scopes that
    skip successful requests, the counted hit is released once the endpoint
    returns without raising.
    """

    async def dependency(
        request: Request,
        response: Response,
        services: Services = Depends(get_services),
    ):
        ctx = await RequestPipeline(services).run(
            request, scope_name, authenticate=authenticate, hydrate=hydrate
        )
        for name, value in ctx.rate_limit.result.headers().items():
            response.headers[name] = value

        yield ctx

        decision = ctx.rate_limit
        if decision.scope.skip_successful_requests and decision.counted_here:
            await services.rate_limiter.release(decision.result)

    return dependency
