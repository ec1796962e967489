"""SiteInsight: Spreadsheet Export Gateway.

Insert-or-update of monthly ExportRows against a Google Sheets range, keyed
by (site URL, year-month) in columns C and F. The sheet is read once per
call; matching rows are rewritten in place and the rest are appended in a
single request, so re-running an export for the same month never duplicates
rows.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from siteinsight.config import settings
from siteinsight.connectors.google.client import extract_error_message
from siteinsight.core.errors import ExportError
from siteinsight.core.logging import get_logger
from siteinsight.export.rows import URL_COLUMN, YEAR_MONTH_COLUMN, ExportRow

logger = get_logger("export.sheets")

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

_RANGE_START_ROW = re.compile(r"![A-Za-z]*(\d+)")


def range_start_row(range_: str) -> int:
    """1-based sheet row where an A1 range starts; `Sheet1!A:N` starts at row 1."""
    match = _RANGE_START_ROW.search(range_ or "")
    return int(match.group(1)) if match else 1


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0


class ServiceAccountTokenProvider:
    """Bearer tokens for the Sheets API from a Google service account."""

    def __init__(self, info: Optional[Dict[str, Any]] = None, file_path: Optional[str] = None):
        if not info and not file_path:
            raise ExportError("No service account configured for spreadsheet export")
        self._info = info
        self._file_path = file_path
        self._credentials: Optional[service_account.Credentials] = None

    @classmethod
    def from_settings(cls) -> "ServiceAccountTokenProvider":
        info = None
        if settings.sheets_service_account_json:
            info = json.loads(settings.sheets_service_account_json)
        return cls(info=info, file_path=settings.sheets_service_account_file)

    def _load(self) -> service_account.Credentials:
        if self._info:
            return service_account.Credentials.from_service_account_info(
                self._info, scopes=SHEETS_SCOPES
            )
        return service_account.Credentials.from_service_account_file(
            self._file_path, scopes=SHEETS_SCOPES
        )

    async def get_token(self) -> str:
        try:
            if self._credentials is None:
                self._credentials = self._load()
            if not self._credentials.valid:
                # google-auth refresh is blocking
                await asyncio.to_thread(self._credentials.refresh, Request())
        except (GoogleAuthError, OSError, ValueError) as e:
            raise ExportError(f"Service account authentication failed: {e}") from e
        return self._credentials.token


class SheetsExportGateway:
    """Async client for the Sheets values API, scoped to one range."""

    def __init__(
        self,
        token_provider: Any,
        spreadsheet_id: str | None = None,
        range_: str | None = None,
        header_rows: int | None = None,
        base_url: str | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float | None = None,
    ):
        self.token_provider = token_provider
        self.spreadsheet_id = spreadsheet_id or settings.sheets_spreadsheet_id
        self.range = range_ or settings.sheets_range
        self.sheet_name = self.range.split("!", 1)[0]
        self.header_rows = settings.sheets_header_rows if header_rows is None else header_rows
        self.base_url = (base_url or settings.sheets_base_url).rstrip("/")
        self.timeout = timeout or settings.provider_timeout_seconds
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _values_url(self, range_: str, suffix: str = "") -> str:
        return (
            f"{self.base_url}/{self.spreadsheet_id}/values/"
            f"{quote(range_, safe='!:')}{suffix}"
        )

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await self.token_provider.get_token()
        client = await self._get_client()
        try:
            resp = await client.request(
                method,
                url,
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            raise ExportError(f"Sheets request failed: {e}") from e

        if not resp.is_success:
            message = extract_error_message(resp)
            logger.warning(
                f"Sheets API error {resp.status_code}: {message}",
                extra={"status_code": resp.status_code},
            )
            raise ExportError(f"Sheets API error ({resp.status_code}): {message}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ExportError("Sheets API returned a non-JSON body") from e
        return data if isinstance(data, dict) else {}

    # ── Reads ──

    async def read_index(self) -> Dict[Tuple[str, str], int]:
        """Map (site URL, year-month) → 1-based sheet row for existing data rows."""
        data = await self._request("GET", self._values_url(self.range))
        # The API echoes the resolved range, e.g. Sheet1!A2:N40 for Sheet1!A2:N
        start_row = range_start_row(data.get("range") or self.range)
        index: Dict[Tuple[str, str], int] = {}
        for offset, row in enumerate(data.get("values") or []):
            if offset < self.header_rows or len(row) <= YEAR_MONTH_COLUMN:
                continue
            key = (str(row[URL_COLUMN]), str(row[YEAR_MONTH_COLUMN]))
            # First match wins when the sheet already holds duplicates
            index.setdefault(key, start_row + offset)
        return index

    # ── Writes ──

    async def _update(self, row_number: int, row: ExportRow) -> None:
        target = f"{self.sheet_name}!A{row_number}:N{row_number}"
        await self._request(
            "PUT",
            self._values_url(target),
            params={"valueInputOption": "RAW"},
            body={"range": target, "majorDimension": "ROWS", "values": [row.to_values()]},
        )

    async def _append(self, rows: List[ExportRow]) -> None:
        await self._request(
            "POST",
            self._values_url(self.range, ":append"),
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            body={"majorDimension": "ROWS", "values": [r.to_values() for r in rows]},
        )

    async def upsert_rows(self, rows: List[ExportRow]) -> UpsertResult:
        """Update rows whose key already exists, append the rest in one call."""
        result = UpsertResult()
        if not rows:
            return result

        # Same key twice in one call: the later row wins
        unique: Dict[Tuple[str, str], ExportRow] = {}
        for row in rows:
            unique[row.key] = row

        existing = await self.read_index()
        to_append: List[ExportRow] = []
        for key, row in unique.items():
            row_number = existing.get(key)
            if row_number is None:
                to_append.append(row)
                continue
            await self._update(row_number, row)
            result.updated += 1

        if to_append:
            await self._append(to_append)
            result.inserted = len(to_append)

        logger.info(
            f"Sheets upsert complete: {result.inserted} inserted, {result.updated} updated "
            f"({len(rows)} rows submitted)"
        )
        return result

    async def upsert_row(self, row: ExportRow) -> UpsertResult:
        return await self.upsert_rows([row])
