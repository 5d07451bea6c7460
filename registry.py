# registry.py
"""
Registry client backed by a Google Sheets range.

Layout: three consecutive columns starting at the range's first column,
`email | active | linked identity`, one customer per row. The sheet is the
only source of truth and is read in full on every call to fetch_rows().
"""
import asyncio
import logging
import os
import re
from typing import List, Optional, Protocol, Tuple
from urllib.parse import quote

import google.auth.transport.requests
import httpx
from google.auth import default as google_auth_default
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account

from errors import RegistryUnavailable
from models import SubscriberRecord

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

TRUTHY = {"true", "yes", "y", "1", "x", "paid"}

_A1_START = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)?$")


class RegistryClient(Protocol):
    async def fetch_rows(self) -> List[SubscriberRecord]: ...

    async def write_cell(self, cell_ref: str, value: str) -> None: ...

    def active_cell(self, record: SubscriberRecord) -> str: ...

    def linked_identity_cell(self, record: SubscriberRecord) -> str: ...


def column_index(letters: str) -> int:
    index = 0
    for char in letters.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def column_letter(index: int) -> str:
    letters = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def split_range(a1_range: str) -> Tuple[str, int, int]:
    """Return (sheet, first column index, first row) for an A1 range like 'Sheet1!A2:C'."""
    sheet, sep, cells = a1_range.rpartition("!")
    if not sep or not sheet:
        raise RegistryUnavailable(f"Registry range has no sheet name: {a1_range!r}")
    start = cells.split(":", 1)[0]
    match = _A1_START.match(start)
    if not match:
        raise RegistryUnavailable(f"Malformed registry range: {a1_range!r}")
    return sheet, column_index(match.group(1)), int(match.group(2) or 1)


def parse_active(cell) -> bool:
    return str(cell).strip().lower() in TRUTHY


def parse_identity(cell) -> Optional[int]:
    text = str(cell).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def parse_rows(values, first_row: int) -> List[SubscriberRecord]:
    records = []
    for offset, row in enumerate(values):
        if not isinstance(row, list):
            raise RegistryUnavailable(f"Malformed registry row at offset {offset}")
        cells = [str(cell) for cell in row] + [""] * (3 - len(row))
        email = cells[0].strip()
        if not email:
            continue
        records.append(SubscriberRecord(
            row_number=first_row + offset,
            email=email,
            active=parse_active(cells[1]),
            linked_identity=parse_identity(cells[2]),
        ))
    return records


class GoogleCredentialHandle:
    """Process-wide Google credentials, exchanged on first use.

    Concurrent first callers wait on the lock so only one exchange happens.
    """

    def __init__(self, credentials_file: Optional[str] = None, scopes=SCOPES):
        self.credentials_file = credentials_file
        self.scopes = scopes
        self._credentials = None
        self._lock = asyncio.Lock()

    def _build(self):
        key_path = self.credentials_file
        if key_path and os.path.exists(key_path):
            return service_account.Credentials.from_service_account_file(key_path, scopes=self.scopes)
        creds, _ = google_auth_default(scopes=self.scopes)
        return creds

    async def token(self) -> str:
        async with self._lock:
            try:
                if self._credentials is None:
                    self._credentials = await asyncio.to_thread(self._build)
                    logger.info("Google credentials initialized")
                if not self._credentials.valid:
                    request = google.auth.transport.requests.Request()
                    await asyncio.to_thread(self._credentials.refresh, request)
            except (GoogleAuthError, OSError) as e:
                raise RegistryUnavailable(f"Google auth failed: {e}") from e
            return self._credentials.token


_credential_handle: Optional[GoogleCredentialHandle] = None


def get_credential_handle(credentials_file: Optional[str] = None) -> GoogleCredentialHandle:
    global _credential_handle
    if _credential_handle is None:
        _credential_handle = GoogleCredentialHandle(credentials_file)
    return _credential_handle


class SheetsRegistry:
    def __init__(
        self,
        spreadsheet_id: str,
        value_range: str,
        credentials,
        http: httpx.AsyncClient,
        api_base: str = "https://sheets.googleapis.com/v4",
    ):
        self.spreadsheet_id = spreadsheet_id
        self.value_range = value_range
        self.credentials = credentials
        self.http = http
        self.api_base = api_base.rstrip("/")
        self.sheet, self.first_column, self.first_row = split_range(value_range)

    def _values_url(self, a1: str) -> str:
        return f"{self.api_base}/spreadsheets/{self.spreadsheet_id}/values/{quote(a1, safe='!:$')}"

    def _cell(self, record: SubscriberRecord, offset: int) -> str:
        return f"{self.sheet}!{column_letter(self.first_column + offset)}{record.row_number}"

    def active_cell(self, record: SubscriberRecord) -> str:
        return self._cell(record, 1)

    def linked_identity_cell(self, record: SubscriberRecord) -> str:
        return self._cell(record, 2)

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        token = await self.credentials.token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise RegistryUnavailable(f"Registry transport error: {e}") from e
        if response.status_code >= 400:
            raise RegistryUnavailable(f"Registry answered {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise RegistryUnavailable("Registry answered with a non-JSON body") from e

    async def fetch_rows(self) -> List[SubscriberRecord]:
        body = await self._request(
            "GET",
            self._values_url(self.value_range),
            params={"majorDimension": "ROWS", "valueRenderOption": "FORMATTED_VALUE"},
        )
        values = body.get("values") if isinstance(body, dict) else None
        if not values or not isinstance(values, list):
            raise RegistryUnavailable(f"Registry range {self.value_range} returned no rows")

        first_row = self.first_row
        returned = body.get("range")
        if returned:
            try:
                first_row = split_range(returned)[2]
            except RegistryUnavailable:
                logger.warning(f"Ignoring unparsable range in registry response: {returned}")

        records = parse_rows(values, first_row)
        logger.info(f"Fetched {len(records)} registry rows from {self.value_range}")
        return records

    async def write_cell(self, cell_ref: str, value: str) -> None:
        await self._request(
            "PUT",
            self._values_url(cell_ref),
            params={"valueInputOption": "RAW"},
            json={"range": cell_ref, "majorDimension": "ROWS", "values": [[value]]},
        )
        logger.info(f"Registry cell {cell_ref} updated")
