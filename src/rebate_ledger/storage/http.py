"""Ledger store backed by the back-office REST API."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from rebate_ledger.config import get_settings
from rebate_ledger.errors import StorageRequestError
from rebate_ledger.storage.base import EntityKind, matches

logger = structlog.get_logger(__name__)

ENDPOINTS: dict[EntityKind, str] = {
    EntityKind.AGENCY: "/api/ad-agencies",
    EntityKind.AD_ACCOUNT: "/api/ad-accounts",
    EntityKind.AD_RECHARGE: "/api/ad-recharges",
    EntityKind.AD_CONSUMPTION: "/api/ad-consumptions",
    EntityKind.REBATE_RECEIVABLE: "/api/rebate-receivables",
    EntityKind.MONTHLY_BILL: "/api/monthly-bills",
}


class HttpLedgerStore:
    """Async httpx client for the ledger's REST collections."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.api_url).rstrip("/")
        if token is None and settings.api_token is not None:
            token = settings.api_token.get_secret_value()
        self._token = token
        self._timeout = timeout if timeout is not None else settings.api_timeout
        self._max_retries = (
            max_retries if max_retries is not None else settings.api_max_retries
        )
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpLedgerStore:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> Any:
        """Make an API request, retrying transport failures and 5xx with backoff."""
        client = await self._get_client()
        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json,
                headers=self._get_headers(),
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                logger.warning(
                    "storage_request_retry", method=method, path=path, attempt=retry_count + 1
                )
                await asyncio.sleep(2**retry_count)
                return await self._request(method, path, params, json, retry_count + 1)
            raise StorageRequestError(f"Request failed: {e}") from e

        if response.status_code >= 500 and retry_count < self._max_retries:
            logger.warning(
                "storage_request_retry",
                method=method,
                path=path,
                status_code=response.status_code,
                attempt=retry_count + 1,
            )
            await asyncio.sleep(2**retry_count)
            return await self._request(method, path, params, json, retry_count + 1)

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else "empty response"}
            raise StorageRequestError(
                f"API error: {response.status_code}",
                status_code=response.status_code,
                details=error_detail,
            )

        return response.json() if response.content else {}

    @staticmethod
    def _extract_items(result: Any) -> list[dict[str, Any]]:
        """Return list of items from a list or wrapped response."""
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            for key in ("data", "items"):
                items = result.get(key)
                if isinstance(items, list):
                    return items
        return []

    @staticmethod
    def _extract_record(result: Any) -> dict[str, Any]:
        if isinstance(result, dict) and isinstance(result.get("data"), dict):
            return result["data"]
        if isinstance(result, dict):
            return result
        raise StorageRequestError("Invalid record response format", details={"raw": result})

    async def list(self, kind: EntityKind, **filters: Any) -> list[dict[str, Any]]:
        result = await self._request("GET", ENDPOINTS[kind], params=filters or None)
        # Not every collection honors query filters server-side
        return [item for item in self._extract_items(result) if matches(item, filters)]

    async def get(self, kind: EntityKind, record_id: str) -> dict[str, Any] | None:
        try:
            result = await self._request("GET", f"{ENDPOINTS[kind]}/{record_id}")
        except StorageRequestError as e:
            if e.status_code == 404:
                return None
            raise
        return self._extract_record(result)

    async def put(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any]:
        """Update the record in place, creating it when the API doesn't know it yet."""
        path = ENDPOINTS[kind]
        try:
            result = await self._request("PUT", f"{path}/{record['id']}", json=record)
        except StorageRequestError as e:
            if e.status_code != 404:
                raise
            result = await self._request("POST", path, json=record)
        saved = self._extract_record(result) if result else {}
        return saved or dict(record)
