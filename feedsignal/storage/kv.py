"""
Durable key-value store used for subscription cursors, the similarity store
and execution tracking.

Two implementations share one async interface (a subset of Redis commands):

- RedisKeyValueStore: redis-py asyncio client, values decoded as str.
- MemoryKeyValueStore: process-local dicts with Redis-compatible semantics
  (string/list/set/hash values, expiry, inclusive list ranges). Used when no
  Redis URL is configured, when Redis is unreachable, and in tests.

connect_kv_store() picks between them and never raises: an unreachable
Redis is logged and replaced by the in-memory store.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

import redis.asyncio as redis
from loguru import logger


class KeyValueStore(ABC):
    persistent: bool = False

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]: ...

    @abstractmethod
    async def incr(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def lpush(self, key: str, *values: str) -> int: ...

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None: ...

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> List[str]: ...

    @abstractmethod
    async def scard(self, key: str) -> int: ...

    @abstractmethod
    async def hset(self, key: str, mapping: Mapping[str, Any]) -> None: ...

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]: ...

    async def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    persistent = False

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}

    # -- internals ---------------------------------------------------------
    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    def _typed(self, key: str, kind: type, create: bool = False):
        if not self._alive(key):
            if not create:
                return None
            self._data[key] = kind()
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE key '{key}' holds {type(value).__name__}, not {kind.__name__}")
        return value

    @staticmethod
    def _slice(length: int, start: int, stop: int) -> Tuple[int, int]:
        if start < 0:
            start = max(length + start, 0)
        if stop < 0:
            stop = length + stop
        return start, min(stop, length - 1) + 1

    # -- interface ---------------------------------------------------------
    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        value = self._typed(key, str)
        return value

    async def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self._expiry.pop(key, None)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = str(value)
        self._expiry[key] = time.monotonic() + ttl_seconds

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def keys(self, prefix: str = "") -> List[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._alive(k)]

    async def incr(self, key: str) -> int:
        current = self._typed(key, str)
        value = int(current or 0) + 1
        self._data[key] = str(value)
        return value

    async def expire(self, key: str, ttl_seconds: int) -> None:
        if self._alive(key):
            self._expiry[key] = time.monotonic() + ttl_seconds

    async def lpush(self, key: str, *values: str) -> int:
        items = self._typed(key, list, create=True)
        for value in values:
            items.insert(0, str(value))
        return len(items)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        items = self._typed(key, list) or []
        lo, hi = self._slice(len(items), start, stop)
        return list(items[lo:hi])

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        items = self._typed(key, list)
        if items is None:
            return
        lo, hi = self._slice(len(items), start, stop)
        self._data[key] = items[lo:hi]

    async def sadd(self, key: str, *members: str) -> int:
        members_set = self._typed(key, set, create=True)
        before = len(members_set)
        members_set.update(str(m) for m in members)
        return len(members_set) - before

    async def srem(self, key: str, *members: str) -> int:
        members_set = self._typed(key, set)
        if members_set is None:
            return 0
        before = len(members_set)
        members_set.difference_update(members)
        return before - len(members_set)

    async def smembers(self, key: str) -> List[str]:
        return sorted(self._typed(key, set) or set())

    async def scard(self, key: str) -> int:
        return len(self._typed(key, set) or set())

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        fields = self._typed(key, dict, create=True)
        fields.update({k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self._typed(key, dict) or {})


class RedisKeyValueStore(KeyValueStore):
    persistent = True

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str, connect_timeout: float = 5.0) -> "RedisKeyValueStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            retry_on_timeout=True,
        )
        return cls(client)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.setex(key, ttl_seconds, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def keys(self, prefix: str = "") -> List[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server
        return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=500)]

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self.client.expire(key, ttl_seconds)

    async def lpush(self, key: str, *values: str) -> int:
        return int(await self.client.lpush(key, *values))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self.client.lrange(key, start, stop))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self.client.ltrim(key, start, stop)

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        return int(await self.client.srem(key, *members))

    async def smembers(self, key: str) -> List[str]:
        return sorted(await self.client.smembers(key))

    async def scard(self, key: str) -> int:
        return int(await self.client.scard(key))

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        await self.client.hset(key, mapping={k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(await self.client.hgetall(key))

    async def close(self) -> None:
        await self.client.aclose()


async def connect_kv_store(url: Optional[str]) -> KeyValueStore:
    """Returns a Redis-backed store when `url` answers PING, else an in-memory one."""
    if not url:
        logger.warning("No Redis URL configured; using in-memory key-value store (state is not persisted)")
        return MemoryKeyValueStore()

    store = RedisKeyValueStore.from_url(url)
    try:
        await store.ping()
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Redis at {url} unreachable ({e}); falling back to in-memory key-value store")
        try:
            await store.close()
        except (redis.RedisError, OSError):
            pass
        return MemoryKeyValueStore()

    logger.info(f"Connected to Redis at {url}")
    return store
