"""
Tests for the Google Sheets registry client, using httpx.MockTransport in
place of the Sheets API.
"""

import asyncio
import json

import httpx
import pytest

from errors import RegistryUnavailable
from models import SubscriberRecord
from registry import (
    GoogleCredentialHandle,
    SheetsRegistry,
    column_index,
    column_letter,
    parse_rows,
    split_range,
)


class StaticCredentials:
    def __init__(self):
        self.calls = 0

    async def token(self):
        self.calls += 1
        return "ya29.token"


def make_registry(handler, value_range="Sheet1!A2:C"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SheetsRegistry("sheet-id", value_range, StaticCredentials(), http, "https://sheets.test/v4")


class TestRangeHelpers:

    @pytest.mark.parametrize("letters,index", [("A", 0), ("C", 2), ("Z", 25), ("AA", 26), ("AZ", 51), ("BA", 52)])
    def test_columns_round_trip(self, letters, index):
        assert column_index(letters) == index
        assert column_letter(index) == letters

    def test_split_range(self):
        assert split_range("Sheet1!A2:C") == ("Sheet1", 0, 2)
        assert split_range("'Paying customers'!D5:F200") == ("'Paying customers'", 3, 5)
        assert split_range("Sheet1!B:D") == ("Sheet1", 1, 1)

    @pytest.mark.parametrize("bad", ["A2:C", "Sheet1!", "Sheet1!2A:C", "!A1:C"])
    def test_malformed_range(self, bad):
        with pytest.raises(RegistryUnavailable):
            split_range(bad)


class TestParseRows:

    def test_rows_are_parsed_with_sheet_row_numbers(self):
        values = [
            ["a@x.com", "TRUE", "42"],
            ["b@x.com", "FALSE"],
            [],
            ["  c@x.com ", "yes", ""],
            ["d@x.com", "paid", "not-an-id"],
        ]
        assert parse_rows(values, 2) == [
            SubscriberRecord(row_number=2, email="a@x.com", active=True, linked_identity=42),
            SubscriberRecord(row_number=3, email="b@x.com", active=False, linked_identity=None),
            SubscriberRecord(row_number=5, email="c@x.com", active=True, linked_identity=None),
            SubscriberRecord(row_number=6, email="d@x.com", active=True, linked_identity=None),
        ]

    def test_non_list_row_is_malformed(self):
        with pytest.raises(RegistryUnavailable):
            parse_rows([["a@x.com"], "oops"], 2)


class TestSheetsRegistry:

    @pytest.mark.asyncio
    async def test_fetch_rows(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "range": "Sheet1!A2:C1000",
                "majorDimension": "ROWS",
                "values": [["a@x.com", "TRUE", "42"], ["b@x.com", "FALSE"]],
            })

        registry = make_registry(handler)
        rows = await registry.fetch_rows()

        assert [r.email for r in rows] == ["a@x.com", "b@x.com"]
        assert rows[0].row_number == 2
        assert seen[0].headers["Authorization"] == "Bearer ya29.token"
        assert seen[0].url.path == "/v4/spreadsheets/sheet-id/values/Sheet1!A2:C"
        assert seen[0].url.params["majorDimension"] == "ROWS"

    @pytest.mark.asyncio
    async def test_empty_range_is_unavailable(self):
        registry = make_registry(lambda request: httpx.Response(200, json={"range": "Sheet1!A2:C"}))
        with pytest.raises(RegistryUnavailable):
            await registry.fetch_rows()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 500])
    async def test_http_errors_are_unavailable(self, status):
        registry = make_registry(lambda request: httpx.Response(status, json={"error": {"code": status}}))
        with pytest.raises(RegistryUnavailable):
            await registry.fetch_rows()

    @pytest.mark.asyncio
    async def test_transport_errors_are_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        registry = make_registry(handler)
        with pytest.raises(RegistryUnavailable):
            await registry.fetch_rows()

    @pytest.mark.asyncio
    async def test_write_cell(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"updatedCells": 1})

        registry = make_registry(handler)
        record = SubscriberRecord(row_number=7, email="a@x.com", active=True)
        await registry.write_cell(registry.linked_identity_cell(record), "42")

        request = seen[0]
        assert request.method == "PUT"
        assert request.url.path == "/v4/spreadsheets/sheet-id/values/Sheet1!C7"
        assert request.url.params["valueInputOption"] == "RAW"
        assert json.loads(request.content)["values"] == [["42"]]

    def test_cells_follow_the_range_columns(self):
        registry = make_registry(lambda request: httpx.Response(200), value_range="Billing!D10:F")
        record = SubscriberRecord(row_number=12, email="a@x.com")
        assert registry.active_cell(record) == "Billing!E12"
        assert registry.linked_identity_cell(record) == "Billing!F12"


class TestGoogleCredentialHandle:

    @pytest.mark.asyncio
    async def test_exchange_happens_once(self, monkeypatch):
        built = []

        class FakeCredentials:
            valid = True
            token = "ya29.once"

        def build(self):
            built.append(1)
            return FakeCredentials()

        monkeypatch.setattr(GoogleCredentialHandle, "_build", build)
        handle = GoogleCredentialHandle()

        tokens = await asyncio.gather(*(handle.token() for _ in range(5)))

        assert tokens == ["ya29.once"] * 5
        assert built == [1]

    @pytest.mark.asyncio
    async def test_auth_failure_is_unavailable(self, monkeypatch):
        from google.auth.exceptions import DefaultCredentialsError

        def build(self):
            raise DefaultCredentialsError("no credentials")

        monkeypatch.setattr(GoogleCredentialHandle, "_build", build)
        with pytest.raises(RegistryUnavailable):
            await GoogleCredentialHandle().token()
