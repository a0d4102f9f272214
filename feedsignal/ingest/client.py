"""
HTTP client for the upstream record source.

Endpoints (all GET, JSON envelope {success, data, meta, message}):
    /public/data/entities
    /public/data/entities/{entity_id}
    /public/data/records?entityId&limit&offset&afterTimestamp
    /public/data/records/{record_id}
    /public/data/stats?entityId

429 (or a plain-text "Too many requests" body) raises UpstreamRateLimited;
every other failure raises UpstreamRequestFailed.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from aiolimiter import AsyncLimiter
from loguru import logger

from ..core.errors import UpstreamRateLimited, UpstreamRequestFailed
from ..core.models import DataRecord, EntityInfo

USER_AGENT = "feedsignal-subscriber/1.0"


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2025-01-01T12:00:00.001Z"""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


class DataSourceClient:
    def __init__(self, config: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = config.get("base_url", "http://localhost:3000").rstrip("/")
        self.api_key = config.get("api_key") or ""
        self.debug = config.get("debug", False)

        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        timeout = httpx.Timeout(float(config.get("timeout", 30.0)), connect=10.0)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        # requests per second across all subscriptions of this client
        rate = float(config.get("rate_limit", 5))
        self.limiter = AsyncLimiter(rate, 1.0)

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        if self.debug:
            logger.debug(f"[DataSourceClient] GET {endpoint} {params}")

        try:
            async with self.limiter:
                resp = await self._client.get(endpoint, params=params)
        except httpx.HTTPError as e:
            raise UpstreamRequestFailed(f"{type(e).__name__}: {e}") from e

        content_type = resp.headers.get("content-type", "")
        body: Dict[str, Any]
        if "application/json" in content_type:
            try:
                body = resp.json()
            except ValueError:
                body = {"success": False, "data": None, "message": f"Invalid JSON body (HTTP {resp.status_code})"}
        else:
            # e.g. a bare "Too many requests" text response
            text = resp.text.strip()
            body = {"success": False, "data": None, "message": text or f"HTTP {resp.status_code} {resp.reason_phrase}"}

        message = str(body.get("message") or "") if isinstance(body, dict) else ""
        if resp.status_code == 429 or "too many requests" in message.lower():
            raise UpstreamRateLimited(status_code=resp.status_code)

        if not resp.is_success:
            raise UpstreamRequestFailed(message or "Request failed", status_code=resp.status_code, code="HTTP_ERROR")

        if not isinstance(body, dict) or not body.get("success"):
            raise UpstreamRequestFailed(message or "API request failed", status_code=resp.status_code, code="API_ERROR")

        data = body.get("data")
        if self.debug and isinstance(data, list) and data:
            logger.debug(f"[DataSourceClient] {endpoint} -> {len(data)} items, meta={body.get('meta')}")
        return data

    async def list_entities(self) -> List[EntityInfo]:
        data = await self._request("/public/data/entities")
        return [EntityInfo.model_validate(item) for item in (data or [])]

    async def get_entity(self, entity_id: str) -> Dict[str, Any]:
        return await self._request(f"/public/data/entities/{entity_id}") or {}

    async def query_records(
        self,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        after_timestamp: Optional[datetime] = None,
    ) -> List[DataRecord]:
        """Records for `entity_id`, ascending by created_at."""
        params = {
            "entityId": entity_id,
            "limit": limit,
            "offset": offset or None,
            "afterTimestamp": format_timestamp(after_timestamp) if after_timestamp else None,
        }
        data = await self._request("/public/data/records", params)
        try:
            records = [DataRecord.model_validate(item) for item in (data or [])]
        except ValueError as e:
            raise UpstreamRequestFailed(f"Malformed record in response: {e}", code="API_ERROR") from e
        records.sort(key=lambda r: r.created_at)
        return records

    async def get_record(self, record_id: str) -> DataRecord:
        data = await self._request(f"/public/data/records/{record_id}")
        return DataRecord.model_validate(data)

    async def get_stats(self, entity_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("/public/data/stats", {"entityId": entity_id}) or {}

    async def close(self) -> None:
        await self._client.aclose()
