from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.dependencies import Services, get_services
from sheetgate.app.middleware.pipeline import RequestContext, pipeline_dependency

logger = get_logger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])

general_scope = pipeline_dependency("general")


class CheckoutRequest(BaseModel):
    target_plan: str = Field(alias="targetPlan", min_length=1)


@router.get("/status")
async def billing_status(ctx: RequestContext = Depends(general_scope)) -> Dict[str, Any]:
    account = ctx.account
    return {
        "success": True,
        "billing": {
            "plan": account.plan,
            "usage": account.usage_this_period,
            "limit": account.effective_limit,
            "periodLimit": account.period_limit,
            "subscriptionStatus": account.subscription_status,
            "periodStart": account.period_anchor.isoformat(),
        },
    }


@router.post("/checkout")
async def checkout(
    body: CheckoutRequest,
    ctx: RequestContext = Depends(general_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "Checkout request received",
        extra=get_log_context(
            request_id=ctx.request_id, account_id=ctx.account_id, target_plan=body.target_plan
        ),
    )
    url = await services.billing.create_checkout(ctx.account, body.target_plan)
    return {"success": True, "url": url}


@router.post("/portal")
async def portal(
    ctx: RequestContext = Depends(general_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    url = await services.billing.create_portal(ctx.account)
    return {"success": True, "url": url}


@router.post("/webhook")
async def webhook(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Stripe webhook. The signature is checked against the raw body."""
    payload = await request.body()
    event = services.billing.verify_event(payload, request.headers.get("Stripe-Signature"))
    await services.billing.handle_event(event)
    return {"received": True}
