"""Tests for the Google Sheets exporter."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from sheetgate.app.core.cache import InMemoryCache
from sheetgate.app.exceptions import ServiceNotConfiguredError, UnauthorizedError, UpstreamError
from sheetgate.app.services.account_cache import AccountCache
from sheetgate.app.services.account_store import InMemoryAccountStore
from sheetgate.app.services.sheets import (
    BATCH_SIZE,
    GOOGLE_TOKEN_URL,
    SheetsExporter,
    column_letter,
    format_requests,
    records_to_rows,
    sheet_name_for,
)

from tests.support import make_account


class FakeGoogle:
    """Sheets and OAuth endpoints backed by a list of recorded requests."""

    def __init__(self, valid_tokens=("google-access-token",), refresh_status=200):
        self.valid_tokens = set(valid_tokens)
        self.refresh_status = refresh_status
        self.requests = []
        self.value_writes = []
        self.batch_updates = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"error": "invalid_grant"})
            self.valid_tokens.add("refreshed-token")
            return httpx.Response(200, json={"access_token": "refreshed-token"})

        token = request.headers["Authorization"].removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": "expired"})

        if request.method == "POST" and request.url.path == "/v4/spreadsheets":
            return httpx.Response(
                200,
                json={
                    "spreadsheetId": "sheet-123",
                    "spreadsheetUrl": "https://docs.google.com/spreadsheets/d/sheet-123",
                    "sheets": [{"properties": {"sheetId": 0}}],
                },
            )
        if request.method == "PUT":
            self.value_writes.append(json.loads(request.content)["values"])
            return httpx.Response(200, json={})
        if request.url.path.endswith(":batchUpdate"):
            self.batch_updates.append(json.loads(request.content)["requests"])
        return httpx.Response(200, json={"replies": []})


@pytest.fixture
def backend():
    return InMemoryCache()


def make_exporter(google, store, backend, client_id="google-client"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(google))
    return SheetsExporter(client, store, AccountCache(backend), client_id, "google-secret")


class TestRecordsToRows:
    def test_headers_are_union_in_first_seen_order(self):
        rows = records_to_rows([{"name": "A", "price": 1}, {"name": "B", "sku": "x"}])
        assert rows == [
            ["name", "price", "sku"],
            ["A", "1", ""],
            ["B", "", "x"],
        ]

    def test_nulls_and_nested_values(self):
        rows = records_to_rows([{"a": None, "b": {"k": "v"}, "c": [1, 2], "d": True}])
        assert rows[1] == ["", '{"k": "v"}', "[1, 2]", "True"]


@pytest.mark.parametrize(
    "index,expected",
    [(1, "A"), (26, "Z"), (27, "AA"), (52, "AZ"), (703, "AAA"), (0, "A")],
)
def test_column_letter(index, expected):
    assert column_letter(index) == expected


def test_sheet_name_for():
    now = datetime(2026, 4, 9, tzinfo=timezone.utc)
    assert sheet_name_for("  product   list ", now) == "product list - 2026-04-09"
    assert sheet_name_for("", now) == "Export - 2026-04-09"
    assert len(sheet_name_for("x" * 200, now)) == 80 + len(" - 2026-04-09")


class TestExport:
    @pytest.mark.asyncio
    async def test_creates_spreadsheet(self, backend):
        google = FakeGoogle()
        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(google, store, backend)

        result = await exporter.export(
            await store.get("user-1"), [{"name": "A"}, {"name": "B"}], "products"
        )

        assert result.spreadsheet_id == "sheet-123"
        assert result.spreadsheet_url.endswith("/sheet-123")
        assert result.sheet_name.startswith("products - ")
        assert google.value_writes == [[["name"], ["A"], ["B"]]]
        assert google.requests[-1].url.path.endswith(":batchUpdate")

    @pytest.mark.asyncio
    async def test_writes_in_batches(self, backend):
        google = FakeGoogle()
        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(google, store, backend)
        data = [{"n": i} for i in range(BATCH_SIZE + 10)]

        await exporter.export(await store.get("user-1"), data, "numbers")

        assert [len(batch) for batch in google.value_writes] == [BATCH_SIZE, 11]

    @pytest.mark.asyncio
    async def test_refreshes_expired_token_once(self, backend):
        google = FakeGoogle(valid_tokens=())
        store = InMemoryAccountStore([make_account()])
        await store.update_fields("user-1", google_provider_refresh_token="refresh-1")
        cache = AccountCache(backend)
        await cache.put(await store.get("user-1"))
        exporter = make_exporter(google, store, backend)

        result = await exporter.export(await store.get("user-1"), [{"a": 1}], "retry")

        assert result.spreadsheet_id == "sheet-123"
        assert (await store.get("user-1")).google_provider_token == "refreshed-token"
        assert await cache.get("user-1") is None
        refresh_calls = [r for r in google.requests if str(r.url) == GOOGLE_TOKEN_URL]
        assert len(refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token_is_unauthorized(self, backend):
        google = FakeGoogle(valid_tokens=())
        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(google, store, backend)

        with pytest.raises(UnauthorizedError):
            await exporter.export(await store.get("user-1"), [{"a": 1}], "x")

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_unauthorized(self, backend):
        google = FakeGoogle(valid_tokens=(), refresh_status=400)
        store = InMemoryAccountStore([make_account()])
        await store.update_fields("user-1", google_provider_refresh_token="refresh-1")
        exporter = make_exporter(google, store, backend)

        with pytest.raises(UnauthorizedError):
            await exporter.export(await store.get("user-1"), [{"a": 1}], "x")
        assert (await store.get("user-1")).google_provider_token == "google-access-token"

    @pytest.mark.asyncio
    async def test_refresh_requires_oauth_client(self, backend):
        google = FakeGoogle(valid_tokens=())
        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(google, store, backend, client_id="")

        with pytest.raises(ServiceNotConfiguredError):
            await exporter.export(await store.get("user-1"), [{"a": 1}], "x")

    @pytest.mark.asyncio
    async def test_no_google_token(self, backend):
        store = InMemoryAccountStore([make_account(google_provider_token=None)])
        exporter = make_exporter(FakeGoogle(), store, backend)

        with pytest.raises(UnauthorizedError):
            await exporter.export(await store.get("user-1"), [{"a": 1}], "x")

    @pytest.mark.parametrize("status", [403, 429, 500])
    @pytest.mark.asyncio
    async def test_google_errors_are_upstream_errors(self, backend, status):
        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(lambda request: httpx.Response(status), store, backend)

        with pytest.raises(UpstreamError) as exc_info:
            await exporter.export(await store.get("user-1"), [{"a": 1}], "x")
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_network_error_is_upstream_error(self, backend):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(unreachable, store, backend)

        with pytest.raises(UpstreamError):
            await exporter.export(await store.get("user-1"), [{"a": 1}], "x")


class TestFormatting:
    def test_basic_formatting_bolds_header_only(self):
        requests = format_requests(7, [["a", "b"], ["1", "2"]], smart_formatting=False)

        assert len(requests) == 1
        header = requests[0]["repeatCell"]
        assert header["range"] == {"sheetId": 7, "startRowIndex": 0, "endRowIndex": 1}
        assert header["cell"]["userEnteredFormat"]["textFormat"] == {"bold": True}

    def test_smart_formatting_styles_the_sheet(self):
        rows = [["a", "b", "c"], ["1", "2", "3"], ["4", "5", "6"]]

        requests = format_requests(7, rows, smart_formatting=True)

        kinds = [next(iter(r)) for r in requests]
        assert kinds == [
            "repeatCell",
            "addConditionalFormatRule",
            "autoResizeDimensions",
            "setBasicFilter",
        ]
        header_format = requests[0]["repeatCell"]["cell"]["userEnteredFormat"]
        assert header_format["horizontalAlignment"] == "CENTER"
        assert header_format["textFormat"]["foregroundColor"] == {"red": 1, "green": 1, "blue": 1}
        rule = requests[1]["addConditionalFormatRule"]["rule"]
        assert rule["ranges"] == [{"sheetId": 7, "startRowIndex": 1, "endRowIndex": 3}]
        assert rule["booleanRule"]["condition"]["values"] == [{"userEnteredValue": "=ISEVEN(ROW())"}]
        assert requests[2]["autoResizeDimensions"]["dimensions"]["endIndex"] == 3
        assert requests[3]["setBasicFilter"]["filter"]["range"]["endColumnIndex"] == 3

    @pytest.mark.asyncio
    async def test_export_honours_the_flag(self, backend):
        google = FakeGoogle()
        store = InMemoryAccountStore([make_account()])
        exporter = make_exporter(google, store, backend)
        account = await store.get("user-1")

        await exporter.export(account, [{"a": 1}], "styled")
        await exporter.export(account, [{"a": 1}], "plain", smart_formatting=False)

        styled, plain = google.batch_updates
        assert len(styled) == 4
        assert len(plain) == 1
        assert styled != plain
