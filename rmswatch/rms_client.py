"""Async client for the Current RMS REST API (opportunities only)."""
from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, AsyncIterator

import httpx

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.current-rms.com/api/v1"
_USER_AGENT = "RMSWatch/1.0"
_TIMEOUT = 30.0
_DEFAULT_PAGE_SIZE = 100


class RMSClientError(Exception):
    """Current RMS request failed or returned an unexpected body."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RMSNotConfigured(RMSClientError):
    """Subdomain or API key missing from the environment."""


class RMSClient:
    def __init__(
        self,
        subdomain: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        page_size: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.subdomain = subdomain or os.environ.get("CURRENT_RMS_SUBDOMAIN", "")
        self._api_key = api_key or os.environ.get("CURRENT_RMS_API_KEY", "")
        self.base_url = (base_url or os.environ.get("CURRENT_RMS_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.page_size = page_size or int(os.environ.get("RMS_SYNC_PAGE_SIZE", _DEFAULT_PAGE_SIZE))
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.subdomain and self._api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "X-SUBDOMAIN": self.subdomain,
            "X-AUTH-TOKEN": self._api_key,
            "Accept": "application/json",
            "User-Agent": _USER_AGENT,
        }

    async def _get(self, client: httpx.AsyncClient, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await client.get(f"{self.base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise RMSClientError(f"Current RMS request failed: {exc}") from exc
        if resp.status_code != 200:
            raise RMSClientError(
                f"Current RMS returned {resp.status_code} for {path}", status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise RMSClientError(f"Current RMS returned invalid JSON for {path}") from exc
        if not isinstance(data, dict):
            raise RMSClientError(f"Unexpected response body for {path}")
        return data

    async def iter_opportunities(
        self, updated_since: datetime | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield opportunities page by page, oldest update first.

        With *updated_since*, only records modified after that instant are returned.
        """
        if not self.configured:
            raise RMSNotConfigured("CURRENT_RMS_SUBDOMAIN and CURRENT_RMS_API_KEY must be set")
        params: dict[str, Any] = {"per_page": self.page_size, "q[s]": "updated_at asc"}
        if updated_since is not None:
            params["q[updated_at_gt]"] = updated_since.isoformat()

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(_TIMEOUT), headers=self._headers(), transport=self._transport,
        ) as client:
            page = 1
            while True:
                data = await self._get(client, "/opportunities", {**params, "page": page})
                records = data.get("opportunities") or []
                log.debug("Fetched opportunities page %d (%d records)", page, len(records))
                if records:
                    yield records
                meta = data.get("meta") or {}
                total = int(meta.get("total_row_count") or 0)
                if not records or len(records) < self.page_size or (total and page * self.page_size >= total):
                    break
                page += 1
