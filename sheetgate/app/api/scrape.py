from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import SubscriptionStatus
from sheetgate.app.dependencies import Services, get_services
from sheetgate.app.exceptions import QuotaExceededError
from sheetgate.app.middleware.pipeline import RequestContext, pipeline_dependency
from sheetgate.app.services.extraction import strip_urls

logger = get_logger(__name__)

router = APIRouter(prefix="/api/scrape", tags=["scrape"])

extraction_scope = pipeline_dependency("extraction")

SCRAPE_LIMIT_MESSAGE = (
    "You have reached your monthly scraping limit. "
    "Please upgrade your plan or wait until next month."
)


class ScrapeRequest(BaseModel):
    html: str = Field(min_length=1)
    instruction: str = Field(min_length=3, max_length=500)
    model: Optional[str] = None
    max_items: Optional[int] = Field(default=None, alias="maxItems", gt=0, le=500)


@router.post("")
async def scrape(
    body: ScrapeRequest,
    ctx: RequestContext = Depends(extraction_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Extract records from page content.

    Reads usage without charging it; only exports consume quota. An account
    already at its limit is refused before the extractor runs.
    """
    account = ctx.account
    log_context = get_log_context(request_id=ctx.request_id, account_id=account.id)

    if account.limit_reached:
        logger.warning(
            f"Limit reached: {account.usage_this_period}/{account.effective_limit}",
            extra=log_context,
        )
        past_due = account.subscription_status == SubscriptionStatus.PAST_DUE.value
        raise QuotaExceededError(
            current=account.usage_this_period,
            limit=account.effective_limit,
            plan=account.plan,
            subscription_status=account.subscription_status,
            detail=None if past_due else SCRAPE_LIMIT_MESSAGE,
        )

    content = strip_urls(body.html)
    logger.info(
        f"Extracting with {len(content)} of {len(body.html)} characters after URL stripping",
        extra=log_context,
    )
    data = await services.extractor.extract(
        content, body.instruction, model=body.model, max_items=body.max_items
    )
    logger.info(f"Extraction complete with {len(data)} items", extra=log_context)

    return {
        "success": True,
        "data": data,
        "itemCount": len(data),
        "usage": {
            "current": account.usage_this_period,
            "limit": account.effective_limit,
            "limitReached": False,
        },
    }
