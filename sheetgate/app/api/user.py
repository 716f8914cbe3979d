from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import AccountSnapshot
from sheetgate.app.dependencies import Services, get_services
from sheetgate.app.exceptions import ProfileNotFoundError
from sheetgate.app.middleware.pipeline import RequestContext, pipeline_dependency

logger = get_logger(__name__)

router = APIRouter(prefix="/api/user", tags=["user"])

general_scope = pipeline_dependency("general")


class SettingsUpdate(BaseModel):
    smart_formatting: Optional[bool] = None


def profile_payload(account: AccountSnapshot, ctx: RequestContext) -> Dict[str, Any]:
    principal = ctx.auth.principal if ctx.auth is not None else None
    return {
        "id": account.id,
        "email": account.email or (principal.email if principal else None),
        "name": principal.name if principal else account.email,
        "picture": principal.picture if principal else None,
        "plan": account.plan,
        "usage_this_period": account.usage_this_period,
        "period_limit": account.period_limit,
        "effective_limit": account.effective_limit,
        "subscription_status": account.subscription_status,
        "smart_formatting": account.smart_formatting,
        "period_anchor": account.period_anchor.isoformat(),
    }


@router.get("/me")
async def me(ctx: RequestContext = Depends(general_scope)) -> Dict[str, Any]:
    return {"success": True, "user": profile_payload(ctx.account, ctx)}


@router.patch("/settings")
async def update_settings(
    body: SettingsUpdate,
    ctx: RequestContext = Depends(general_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    fields = body.model_dump(exclude_none=True)
    logger.info(
        "Updating settings",
        extra=get_log_context(request_id=ctx.request_id, account_id=ctx.account_id, **fields),
    )
    account = await services.store.update_fields(ctx.account_id, **fields)
    await services.account_cache.invalidate(ctx.account_id)
    if account is None:
        raise ProfileNotFoundError(ctx.account_id)
    return {"success": True, "settings": {"smart_formatting": account.smart_formatting}}


@router.get("/activities")
async def list_activities(
    ctx: RequestContext = Depends(general_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Export history, newest first."""
    activities = await services.store.list_activities(ctx.account_id)
    return {"success": True, "activities": [a.to_dict() for a in activities]}


@router.delete("/activities")
async def clear_activities(
    ctx: RequestContext = Depends(general_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    removed = await services.store.clear_activities(ctx.account_id)
    logger.info(
        f"Cleared {removed} activities",
        extra=get_log_context(request_id=ctx.request_id, account_id=ctx.account_id),
    )
    return {"success": True, "message": "All activities cleared successfully"}


@router.delete("/delete-account")
async def delete_account(
    ctx: RequestContext = Depends(general_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Delete the account row, then the identity provider principal."""
    account_id = ctx.account_id
    await services.store.delete(account_id)
    await services.account_cache.invalidate(account_id)
    await services.identity.delete_principal(account_id)
    logger.info(
        "Account deleted",
        extra=get_log_context(request_id=ctx.request_id, account_id=account_id),
    )
    return {"success": True, "message": "Account deleted successfully"}
