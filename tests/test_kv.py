import time

import pytest

from feedsignal.storage.kv import MemoryKeyValueStore, connect_kv_store


async def test_set_get_delete(kv):
    await kv.set("a", "1")
    assert await kv.get("a") == "1"
    assert await kv.delete("a", "missing") == 1
    assert await kv.get("a") is None


async def test_expiry(kv):
    await kv.set_with_expiry("k", "v", 10)
    assert await kv.get("k") == "v"

    kv._expiry["k"] = time.monotonic() - 1
    assert await kv.get("k") is None
    assert await kv.keys("k") == []


async def test_incr_and_prefix_listing(kv):
    assert await kv.incr("counter") == 1
    assert await kv.incr("counter") == 2
    await kv.set("flow:a", "x")
    await kv.set("flow:b", "y")
    assert sorted(await kv.keys("flow:")) == ["flow:a", "flow:b"]


async def test_list_push_range_trim(kv):
    for i in range(5):
        await kv.lpush("l", str(i))
    assert await kv.lrange("l", 0, -1) == ["4", "3", "2", "1", "0"]
    assert await kv.lrange("l", 0, 1) == ["4", "3"]

    await kv.ltrim("l", 0, 2)
    assert await kv.lrange("l", 0, -1) == ["4", "3", "2"]
    assert await kv.lrange("missing", 0, -1) == []


async def test_sets_and_hashes(kv):
    assert await kv.sadd("s", "b", "a", "b") == 2
    assert await kv.smembers("s") == ["a", "b"]
    assert await kv.scard("s") == 2
    assert await kv.srem("s", "a") == 1

    await kv.hset("h", {"n": 3, "t": "x"})
    assert await kv.hgetall("h") == {"n": "3", "t": "x"}


async def test_wrong_type_raises(kv):
    await kv.set("plain", "v")
    with pytest.raises(TypeError):
        await kv.lpush("plain", "x")


async def test_connect_without_url_falls_back_to_memory():
    store = await connect_kv_store(None)
    assert isinstance(store, MemoryKeyValueStore)
    assert store.persistent is False


async def test_connect_to_unreachable_redis_falls_back_to_memory():
    store = await connect_kv_store("redis://127.0.0.1:1/0")
    assert isinstance(store, MemoryKeyValueStore)
