"""Google Sheets export over the Sheets REST API.

Creates a spreadsheet with a single ``Data`` tab, writes the records in
batches and formats it. Smart formatting styles the header, shades
alternate rows, sizes the columns and adds a filter; basic formatting
only bolds the header row. An expired Google access token is
refreshed once with the stored refresh token; the refreshed token is
written back to the account and the cached snapshot invalidated.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from sheetgate.app.core.logging import get_log_context, get_logger
from sheetgate.app.db.models import AccountSnapshot
from sheetgate.app.exceptions import (
    ServiceNotConfiguredError,
    UnauthorizedError,
    UpstreamError,
)
from sheetgate.app.services.account_cache import AccountCache
from sheetgate.app.services.account_store import AccountStore

logger = get_logger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DATA_SHEET_TITLE = "Data"
BATCH_SIZE = 500
MAX_TITLE_LENGTH = 80
HEADER_COLOR = {"red": 0.2, "green": 0.4, "blue": 0.6}
ALTERNATE_ROW_COLOR = {"red": 0.95, "green": 0.97, "blue": 1}


class GoogleTokenExpiredError(Exception):
    """The Google access token was rejected with 401."""


@dataclass
class SpreadsheetResult:
    spreadsheet_id: str
    spreadsheet_url: str
    sheet_name: str


def records_to_rows(data: List[Dict[str, Any]]) -> List[List[str]]:
    """Convert records to a header row plus value rows.

    Headers are the union of keys in first-seen order. Missing and null
    values become empty strings; nested values are JSON encoded.
    """
    headers: List[str] = []
    for record in data:
        for key in record:
            if key not in headers:
                headers.append(key)

    rows = [headers]
    for record in data:
        row = []
        for header in headers:
            value = record.get(header)
            if value is None:
                row.append("")
            elif isinstance(value, (dict, list)):
                row.append(json.dumps(value, ensure_ascii=False))
            else:
                row.append(str(value))
        rows.append(row)
    return rows


def column_letter(index: int) -> str:
    """1-based column index to A1 letters (1 -> A, 27 -> AA)."""
    letters = ""
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters or "A"


def sheet_name_for(instruction: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    title = " ".join(instruction.split())[:MAX_TITLE_LENGTH].strip() or "Export"
    return f"{title} - {now:%Y-%m-%d}"


class SheetsExporter:
    """Spreadsheet creation on behalf of an account.

    Args:
        client: Shared HTTP client.
        store: Account store holding the Google tokens.
        cache: Entity cache, invalidated after a token refresh.
        client_id: Google OAuth client id used for refreshes.
        client_secret: Google OAuth client secret used for refreshes.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: AccountStore,
        cache: AccountCache,
        client_id: str = "",
        client_secret: str = "",
    ):
        self._client = client
        self._store = store
        self._cache = cache
        self._client_id = client_id
        self._client_secret = client_secret

    async def _request(self, method: str, url: str, token: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.HTTPError as e:
            logger.error(f"Google Sheets request failed: {e}")
            raise UpstreamError("google", "Failed to create spreadsheet") from e

        if response.status_code == 401:
            raise GoogleTokenExpiredError()
        if response.status_code == 403:
            raise UpstreamError(
                "google",
                "Permission denied. Please ensure Sheets API is enabled and authorized.",
            )
        if response.status_code == 429:
            raise UpstreamError(
                "google", "API rate limit exceeded. Please try again in a few minutes."
            )
        if response.status_code >= 400:
            logger.error(
                f"Google Sheets returned {response.status_code}: {response.text[:200]}"
            )
            raise UpstreamError("google", "Failed to create spreadsheet")
        return response.json()

    async def create_spreadsheet(
        self,
        token: str,
        title: str,
        data: List[Dict[str, Any]],
        smart_formatting: bool = True,
    ) -> SpreadsheetResult:
        created = await self._request(
            "POST",
            SHEETS_API_URL,
            token,
            json={
                "properties": {"title": title},
                "sheets": [
                    {
                        "properties": {
                            "title": DATA_SHEET_TITLE,
                            "gridProperties": {"frozenRowCount": 1},
                        }
                    }
                ],
            },
        )
        spreadsheet_id = created["spreadsheetId"]
        spreadsheet_url = created["spreadsheetUrl"]
        sheet_id = created["sheets"][0]["properties"]["sheetId"]

        rows = records_to_rows(data)
        end_col = column_letter(len(rows[0]))
        for start in range(0, len(rows), BATCH_SIZE):
            batch = rows[start:start + BATCH_SIZE]
            cell_range = f"{DATA_SHEET_TITLE}!A{start + 1}:{end_col}{start + len(batch)}"
            await self._request(
                "PUT",
                f"{SHEETS_API_URL}/{spreadsheet_id}/values/{cell_range}",
                token,
                params={"valueInputOption": "RAW"},
                json={"values": batch},
            )

        await self._request(
            "POST",
            f"{SHEETS_API_URL}/{spreadsheet_id}:batchUpdate",
            token,
            json={"requests": format_requests(sheet_id, rows, smart_formatting)},
        )
        logger.info(
            f"Spreadsheet {spreadsheet_id} created with {len(data)} rows",
            extra=get_log_context(smart_formatting=smart_formatting),
        )
        return SpreadsheetResult(spreadsheet_id, spreadsheet_url, title)

    async def refresh_google_token(self, account_id: str) -> str:
        """Exchange the stored refresh token for a new access token."""
        if not self._client_id or not self._client_secret:
            raise ServiceNotConfiguredError("Google OAuth client is not configured")

        refresh_token = await self._store.get_refresh_token(account_id)
        if not refresh_token:
            raise UnauthorizedError("No Google refresh token available. Please sign in again.")

        try:
            response = await self._client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamError("google", "Failed to refresh Google token") from e

        if response.status_code != 200:
            logger.error(
                f"Google token refresh failed with {response.status_code}",
                extra=get_log_context(account_id=account_id),
            )
            raise UnauthorizedError("Failed to refresh Google token. Please sign in again.")

        access_token = response.json()["access_token"]
        await self._store.update_fields(account_id, google_provider_token=access_token)
        await self._cache.invalidate(account_id)
        logger.info("Google token refreshed", extra=get_log_context(account_id=account_id))
        return access_token

    async def export(
        self,
        account: AccountSnapshot,
        data: List[Dict[str, Any]],
        instruction: str,
        smart_formatting: bool = True,
    ) -> SpreadsheetResult:
        """Create the spreadsheet, refreshing the Google token once on expiry."""
        if not account.google_provider_token:
            raise UnauthorizedError(
                "Google authentication not found. Please sign in again to reconnect Google Sheets."
            )
        title = sheet_name_for(instruction)
        try:
            return await self.create_spreadsheet(
                account.google_provider_token, title, data, smart_formatting
            )
        except GoogleTokenExpiredError:
            logger.info(
                "Google token expired, refreshing",
                extra=get_log_context(account_id=account.id),
            )

        token = await self.refresh_google_token(account.id)
        try:
            return await self.create_spreadsheet(token, title, data, smart_formatting)
        except GoogleTokenExpiredError:
            raise UnauthorizedError("Invalid or expired Google token. Please re-authenticate.")


def _header_format_request(sheet_id: int) -> Dict[str, Any]:
    return {
        "repeatCell": {
            "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1},
            "cell": {
                "userEnteredFormat": {
                    "textFormat": {"bold": True},
                    "backgroundColor": {"red": 0.95, "green": 0.95, "blue": 0.95},
                }
            },
            "fields": "userEnteredFormat(textFormat,backgroundColor)",
        }
    }


def _styled_format_requests(
    sheet_id: int, row_count: int, column_count: int
) -> List[Dict[str, Any]]:
    return [
        {
            "repeatCell": {
                "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1},
                "cell": {
                    "userEnteredFormat": {
                        "textFormat": {
                            "bold": True,
                            "foregroundColor": {"red": 1, "green": 1, "blue": 1},
                            "fontSize": 11,
                        },
                        "backgroundColor": HEADER_COLOR,
                        "horizontalAlignment": "CENTER",
                        "verticalAlignment": "MIDDLE",
                    }
                },
                "fields": (
                    "userEnteredFormat(textFormat,backgroundColor,"
                    "horizontalAlignment,verticalAlignment)"
                ),
            }
        },
        {
            "addConditionalFormatRule": {
                "rule": {
                    "ranges": [
                        {"sheetId": sheet_id, "startRowIndex": 1, "endRowIndex": row_count}
                    ],
                    "booleanRule": {
                        "condition": {
                            "type": "CUSTOM_FORMULA",
                            "values": [{"userEnteredValue": "=ISEVEN(ROW())"}],
                        },
                        "format": {"backgroundColor": ALTERNATE_ROW_COLOR},
                    },
                },
                "index": 0,
            }
        },
        {
            "autoResizeDimensions": {
                "dimensions": {
                    "sheetId": sheet_id,
                    "dimension": "COLUMNS",
                    "startIndex": 0,
                    "endIndex": column_count,
                }
            }
        },
        {
            "setBasicFilter": {
                "filter": {
                    "range": {
                        "sheetId": sheet_id,
                        "startRowIndex": 0,
                        "endRowIndex": row_count,
                        "startColumnIndex": 0,
                        "endColumnIndex": column_count,
                    }
                }
            }
        },
    ]


def format_requests(
    sheet_id: int, rows: List[List[str]], smart_formatting: bool
) -> List[Dict[str, Any]]:
    """batchUpdate requests for the written rows (header row first)."""
    if not smart_formatting:
        return [_header_format_request(sheet_id)]
    return _styled_format_requests(sheet_id, len(rows), len(rows[0]))
