from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.dependencies import Services, get_services
from sheetgate.app.db.models import ActivityRecord
from sheetgate.app.exceptions import (
    QuotaExceededError,
    StoreUnavailableError,
    UnauthorizedError,
)
from sheetgate.app.middleware.pipeline import RequestContext, pipeline_dependency

logger = get_logger(__name__)

router = APIRouter(prefix="/api/sheets", tags=["sheets"])

export_scope = pipeline_dependency("export")


class ExportRequest(BaseModel):
    data: List[Dict[str, Any]] = Field(min_length=1)
    instruction: str = Field(min_length=1, max_length=500)
    smart_formatting: bool = Field(default=True, alias="smartFormatting")


@router.post("/export")
async def export(
    body: ExportRequest,
    ctx: RequestContext = Depends(export_scope),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Export records to a new Google spreadsheet. Charges one unit of quota
    and appends the export to the account's history."""
    account = ctx.account
    log_context = get_log_context(request_id=ctx.request_id, account_id=account.id)

    # Checked before charging so a caller without Google access is never billed
    if not account.google_provider_token:
        raise UnauthorizedError(
            "Google authentication not found. Please sign in again to reconnect Google Sheets."
        )

    usage = await services.ledger.try_consume(account.id)
    if not usage.allowed:
        logger.warning(
            f"Limit reached: {usage.new_usage}/{usage.effective_limit}", extra=log_context
        )
        raise QuotaExceededError(
            current=usage.new_usage,
            limit=usage.effective_limit,
            plan=usage.plan,
            subscription_status=usage.subscription_status,
        )

    logger.info(f"Export request with {len(body.data)} rows", extra=log_context)
    result = await services.sheets.export(
        account, body.data, body.instruction, smart_formatting=body.smart_formatting
    )

    try:
        await services.store.record_activity(
            ActivityRecord(
                account_id=account.id,
                sheet_name=result.sheet_name,
                spreadsheet_url=result.spreadsheet_url,
                spreadsheet_id=result.spreadsheet_id,
                item_count=len(body.data),
                instruction=body.instruction,
            )
        )
    except StoreUnavailableError as e:
        # The spreadsheet exists and usage is charged; history is best effort
        logger.error(f"Failed to save activity: {e}", extra=log_context)

    return {
        "success": True,
        "spreadsheetUrl": result.spreadsheet_url,
        "spreadsheetId": result.spreadsheet_id,
        "sheetName": result.sheet_name,
        "usage": usage.usage_payload(),
    }
