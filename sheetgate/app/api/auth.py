"""Sign-in endpoints. All of them count against the ``auth`` rate limit scope;
successful calls are released again so legitimate sign-ins are not penalized.
"""

from typing import Any, Dict
from urllib.parse import parse_qs, urlsplit

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.dependencies import Services, get_services
from sheetgate.app.exceptions import BadRequestError, UnauthorizedError
from sheetgate.app.middleware.pipeline import (
    RequestContext,
    pipeline_dependency,
    verify_token,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

anonymous_auth_scope = pipeline_dependency("auth", authenticate=False)
authenticated_auth_scope = pipeline_dependency("auth")


class CallbackRequest(BaseModel):
    redirect_url: str = Field(alias="redirectUrl", min_length=1)


def _redirect_target(extension_id: str) -> str:
    if extension_id:
        return f"https://{extension_id}.chromiumapp.org/"
    return "http://localhost:3000"


@router.get("/google/url")
async def google_url(
    ctx: RequestContext = Depends(anonymous_auth_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    url = services.identity.authorize_url(_redirect_target(services.config.extension_id))
    return {"success": True, "url": url}


@router.post("/callback")
async def callback(
    body: CallbackRequest,
    ctx: RequestContext = Depends(anonymous_auth_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Finish the OAuth redirect: verify the session and provision the account."""
    fragment = parse_qs(urlsplit(body.redirect_url).fragment)
    access_token = fragment.get("access_token", [None])[0]
    if not access_token:
        raise BadRequestError("No access token in redirect URL")
    refresh_token = fragment.get("refresh_token", [None])[0]
    provider_token = fragment.get("provider_token", [None])[0]
    provider_refresh_token = fragment.get("provider_refresh_token", [None])[0]

    principal = await verify_token(services, access_token)
    if principal is None:
        raise UnauthorizedError("Failed to authenticate user")

    account, created = await services.store.provision(
        principal.id,
        principal.email,
        google_provider_token=provider_token,
        google_provider_refresh_token=provider_refresh_token,
    )
    await services.account_cache.invalidate(principal.id)
    logger.info(
        "New account provisioned" if created else "Account tokens refreshed",
        extra=get_log_context(request_id=ctx.request_id, account_id=principal.id),
    )

    return {
        "success": True,
        "session": {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "user_id": principal.id,
        },
        "user": {
            "id": principal.id,
            "email": principal.email,
            "name": principal.name,
            "picture": principal.picture,
            "plan": account.plan,
            "usage_this_period": account.usage_this_period,
            "period_limit": account.period_limit,
            "subscription_status": account.subscription_status,
            "smart_formatting": account.smart_formatting,
        },
    }


@router.post("/signout")
async def signout(ctx: RequestContext = Depends(authenticated_auth_scope)) -> Dict[str, Any]:
    logger.info(
        "User signing out",
        extra=get_log_context(request_id=ctx.request_id, account_id=ctx.account_id),
    )
    return {"success": True, "message": "Signed out successfully"}
