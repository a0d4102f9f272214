from datetime import datetime, timezone

import httpx
import pytest

from feedsignal.core.errors import UpstreamRateLimited, UpstreamRequestFailed
from feedsignal.ingest.client import DataSourceClient, format_timestamp


def make_client(handler) -> DataSourceClient:
    config = {"base_url": "http://upstream.test", "api_key": "secret", "rate_limit": 100}
    return DataSourceClient(config, transport=httpx.MockTransport(handler))


def ok(data, meta=None):
    return httpx.Response(200, json={"success": True, "data": data, "meta": meta or {}})


def test_format_timestamp_millisecond_precision():
    ts = datetime(2025, 1, 1, 12, 0, 0, 1500, tzinfo=timezone.utc)
    assert format_timestamp(ts) == "2025-01-01T12:00:00.001Z"
    assert format_timestamp(datetime(2025, 1, 1)) == "2025-01-01T00:00:00.000Z"


async def test_query_records_sends_cursor_and_sorts_ascending():
    seen = {}

    def handler(request: httpx.Request):
        seen["params"] = dict(request.url.params)
        seen["api_key"] = request.headers.get("X-API-Key")
        return ok([
            {"id": "r2", "entityId": "e1", "data": {"content": "second"}, "createdAt": "2025-01-01T12:00:02.000Z"},
            {"id": "r1", "entityId": "e1", "data": {"content": "first"}, "createdAt": "2025-01-01T12:00:01.000Z"},
        ])

    client = make_client(handler)
    after = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    records = await client.query_records("e1", limit=40, after_timestamp=after)
    await client.close()

    assert [r.id for r in records] == ["r1", "r2"]
    assert records[0].content == "first"
    assert seen["params"] == {"entityId": "e1", "limit": "40", "afterTimestamp": "2025-01-01T12:00:00.000Z"}
    assert seen["api_key"] == "secret"


async def test_list_entities():
    def handler(request):
        assert request.url.path == "/public/data/entities"
        return ok([{"entityId": "e1", "dataType": "info", "count": 3, "displayName": "Alpha"}])

    client = make_client(handler)
    entities = await client.list_entities()
    await client.close()

    assert entities[0].entity_id == "e1"
    assert entities[0].name == "Alpha"


async def test_http_429_is_rate_limited():
    client = make_client(lambda request: httpx.Response(429, json={"success": False, "message": "slow down"}))
    with pytest.raises(UpstreamRateLimited) as exc:
        await client.query_records("e1")
    await client.close()
    assert exc.value.status_code == 429


async def test_plain_text_too_many_requests_is_rate_limited():
    client = make_client(lambda request: httpx.Response(503, text="Too many requests, please try later"))
    with pytest.raises(UpstreamRateLimited):
        await client.query_records("e1")
    await client.close()


async def test_other_failures_are_request_failures():
    client = make_client(lambda request: httpx.Response(500, json={"success": False, "message": "boom"}))
    with pytest.raises(UpstreamRequestFailed) as exc:
        await client.query_records("e1")
    assert not isinstance(exc.value, UpstreamRateLimited)
    assert exc.value.status_code == 500
    assert exc.value.code == "HTTP_ERROR"

    client = make_client(lambda request: httpx.Response(200, json={"success": False, "message": "bad entity"}))
    with pytest.raises(UpstreamRequestFailed) as exc:
        await client.query_records("e1")
    assert exc.value.code == "API_ERROR"
    await client.close()


async def test_transport_error_is_request_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = make_client(handler)
    with pytest.raises(UpstreamRequestFailed):
        await client.list_entities()
    await client.close()


async def test_single_lookups_and_stats():
    def handler(request):
        path = request.url.path
        if path == "/public/data/entities/e1":
            return ok({"entityId": "e1", "count": 9})
        if path == "/public/data/records/r1":
            return ok({"id": "r1", "entityId": "e1", "data": {"content": "hi"}, "createdAt": "2025-01-01T00:00:00Z"})
        if path == "/public/data/stats":
            assert request.url.params["entityId"] == "e1"
            return ok({"totalRecords": 9})
        return httpx.Response(404, json={"success": False, "message": "not found"})

    client = make_client(handler)
    assert (await client.get_entity("e1"))["count"] == 9
    assert (await client.get_record("r1")).content == "hi"
    assert await client.get_stats("e1") == {"totalRecords": 9}
    with pytest.raises(UpstreamRequestFailed):
        await client.get_record("missing")
    await client.close()
