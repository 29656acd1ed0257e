"""
Legacy Material Request Sync - Legacy Row Sources

This module defines the abstraction for where legacy material request rows come
from and provides the HTTP implementation used in production plus an in-memory
implementation for tests and local replays.

Rows are opaque dicts; no schema is assumed beyond what fields.py reads.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .config import LEGACY_SYNC_DEFAULT_ENDPOINT, LEGACY_SYNC_DEFAULT_TIMEOUT_MS
from .errors import LegacyFetchError
from .fields import LegacyRow

logger = logging.getLogger(__name__)

# Keys a legacy API may wrap its row array under
ROW_CONTAINER_KEYS = ("data", "items", "rows", "records")


def unwrap_rows(payload: Any) -> List[LegacyRow]:
    """
    Extract the row list from a legacy API response body.

    Accepts a bare array or an object wrapping the array under one of
    ROW_CONTAINER_KEYS. Anything else yields an empty list.
    """
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]

    if not isinstance(payload, dict):
        return []

    for key in ROW_CONTAINER_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return [row for row in value if isinstance(row, dict)]

    return []


class LegacyRowSource(ABC):
    """
    Abstract base class for legacy material request sources.

    A source returns every candidate row for a company in a single call.
    """

    @abstractmethod
    async def fetch_rows(self, company_id: str) -> List[LegacyRow]:
        """
        Fetch all candidate rows for the company.

        Raises:
            LegacyFetchError: when the legacy system cannot be read. This is
                fatal to the whole sync run.
        """

    @abstractmethod
    def get_source_name(self) -> str:
        """Return a descriptive name for this source."""


class InMemorySource(LegacyRowSource):
    """
    In-memory row source for testing.

    Rows can be added programmatically.
    """

    def __init__(self, rows: Optional[List[LegacyRow]] = None, name: str = "in_memory"):
        self._name = name
        self._rows: List[LegacyRow] = list(rows or [])

    def add_row(self, row: LegacyRow) -> None:
        self._rows.append(row)

    def add_rows(self, rows: List[LegacyRow]) -> None:
        self._rows.extend(rows)

    def clear(self) -> None:
        self._rows.clear()

    async def fetch_rows(self, company_id: str) -> List[LegacyRow]:
        return list(self._rows)

    def get_source_name(self) -> str:
        return self._name


class HttpLegacySource(LegacyRowSource):
    """
    Reads legacy material requests from the legacy system's migration API.

    One GET request per run:
        GET {base_url}{endpoint}?companyId=...&businessUnitId=...
        Authorization: Bearer <token>   (optional)

    Usage:
        source = HttpLegacySource("https://legacy.example.com", api_token="...")
        rows = await source.fetch_rows(company_id)
    """

    def __init__(
        self,
        base_url: str,
        endpoint: str = LEGACY_SYNC_DEFAULT_ENDPOINT,
        legacy_scope_id: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_ms: int = LEGACY_SYNC_DEFAULT_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.endpoint = endpoint
        self.legacy_scope_id = legacy_scope_id
        self._api_token = api_token
        self.timeout_ms = timeout_ms
        self._transport = transport

    def build_url(self) -> str:
        return str(httpx.URL(self.base_url).join(self.endpoint))

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    def _params(self, company_id: str) -> Dict[str, str]:
        params = {"companyId": company_id}
        if self.legacy_scope_id:
            params["businessUnitId"] = self.legacy_scope_id
        return params

    async def fetch_rows(self, company_id: str) -> List[LegacyRow]:
        url = self.build_url()
        timeout_seconds = self.timeout_ms / 1000
        timeout = httpx.Timeout(timeout_seconds)

        logger.info("Fetching legacy material requests from %s", url)

        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=True, transport=self._transport
            ) as client:
                # httpx timeouts are per phase; the whole request is bounded here
                resp = await asyncio.wait_for(
                    client.get(url, headers=self._headers(), params=self._params(company_id)),
                    timeout_seconds,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise LegacyFetchError(f"Legacy API timed out after {self.timeout_ms}ms") from e
        except httpx.HTTPError as e:
            raise LegacyFetchError(f"Legacy API request failed: {e}") from e

        if not resp.is_success:
            raise LegacyFetchError(
                f"Legacy API failed {resp.status_code} {resp.reason_phrase}: {resp.text[:240]}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise LegacyFetchError("Legacy API returned a non-JSON body") from e

        rows = unwrap_rows(payload)
        logger.info("Fetched %d legacy material request rows", len(rows))
        return rows

    def get_source_name(self) -> str:
        return self.build_url()
