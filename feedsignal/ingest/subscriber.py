"""
Cursor-resumable polling of one upstream entity.

A Subscription is an asyncio task that, every `interval` seconds (+ jitter):

1. queries records created after the entity's cursor,
2. drops anything older than the cursor,
3. advances the cursor to newest created_at + 1 ms (never backwards),
4. persists the cursor, then hands the records to on_data.

Failures (rate limit or otherwise) go to on_error / on_status_change(False)
and leave the cursor untouched; the next tick simply tries again.

Cursors live in the key-value store under {prefix}{entity_id} as JSON. If the
store errors out, CursorStore logs once and keeps working from memory for the
rest of the process.
"""

import asyncio
import inspect
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger
from redis.exceptions import RedisError

from .client import DataSourceClient, format_timestamp
from ..core.errors import FeedSignalError, PersistenceUnavailable, UpstreamRequestFailed
from ..core.models import DataRecord, SubscriptionCursor, utc_now
from ..storage.kv import KeyValueStore, MemoryKeyValueStore

CURSOR_STEP = timedelta(milliseconds=1)
DEFAULT_CURSOR_PREFIX = "feedsignal:datasource:"

MaybeAwaitable = Union[None, Awaitable[None]]
DataCallback = Callable[[List[DataRecord]], MaybeAwaitable]
ErrorCallback = Callable[[FeedSignalError], MaybeAwaitable]
StatusCallback = Callable[[bool], MaybeAwaitable]

_STORE_ERRORS = (RedisError, OSError, PersistenceUnavailable)


async def maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class CursorStore:
    def __init__(self, kv: Optional[KeyValueStore], prefix: str = DEFAULT_CURSOR_PREFIX, enabled: bool = True):
        self.prefix = prefix
        self.enabled = enabled and kv is not None
        self.kv: KeyValueStore = kv if self.enabled else MemoryKeyValueStore()
        self.degraded = False

    def _key(self, entity_id: str) -> str:
        return f"{self.prefix}{entity_id}"

    def _degrade(self, action: str, error: Exception) -> None:
        if self.degraded:
            return
        logger.warning(f"[CursorStore] {action} failed ({error}); cursors are kept in memory from now on")
        self.kv = MemoryKeyValueStore()
        self.degraded = True

    async def load(self, entity_id: str) -> Optional[SubscriptionCursor]:
        if not self.enabled:
            return None
        try:
            raw = await self.kv.get(self._key(entity_id))
        except _STORE_ERRORS as e:
            self._degrade("load", e)
            return None
        if raw is None:
            return None
        try:
            return SubscriptionCursor.model_validate_json(raw)
        except ValueError as e:
            logger.warning(f"[CursorStore] ignoring unreadable cursor for {entity_id}: {e}")
            return None

    async def save(self, cursor: SubscriptionCursor) -> None:
        try:
            await self.kv.set(self._key(cursor.entity_id), cursor.model_dump_json())
        except _STORE_ERRORS as e:
            self._degrade("save", e)
            await self.kv.set(self._key(cursor.entity_id), cursor.model_dump_json())

    async def delete(self, entity_id: str) -> None:
        try:
            await self.kv.delete(self._key(entity_id))
        except _STORE_ERRORS as e:
            self._degrade("delete", e)

    async def all_states(self) -> Dict[str, SubscriptionCursor]:
        states: Dict[str, SubscriptionCursor] = {}
        try:
            keys = await self.kv.keys(self.prefix)
            for key in keys:
                raw = await self.kv.get(key)
                if not raw:
                    continue
                try:
                    states[key[len(self.prefix):]] = SubscriptionCursor.model_validate_json(raw)
                except ValueError:
                    logger.warning(f"[CursorStore] skipping unreadable cursor under {key}")
        except _STORE_ERRORS as e:
            self._degrade("listing", e)
        return states

    async def clear(self) -> int:
        try:
            keys = await self.kv.keys(self.prefix)
            if keys:
                await self.kv.delete(*keys)
        except _STORE_ERRORS as e:
            self._degrade("clear", e)
            return 0
        logger.info(f"[CursorStore] cleared {len(keys)} cursors")
        return len(keys)

    async def stats(self) -> Dict[str, Any]:
        states = await self.all_states()
        stamps = sorted(s.last_timestamp for s in states.values() if s.last_timestamp)
        return {
            "total_entities": len(states),
            "total_records": sum(s.total_records_seen for s in states.values()),
            "oldest_timestamp": format_timestamp(stamps[0]) if stamps else None,
            "newest_timestamp": format_timestamp(stamps[-1]) if stamps else None,
            "persistent": self.enabled and not self.degraded and self.kv.persistent,
        }


class Subscription:
    def __init__(
        self,
        client: DataSourceClient,
        cursors: CursorStore,
        entity_id: str,
        interval: float,
        limit: int,
        on_data: Optional[DataCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        initial_delay: float = 0.0,
        jitter: float = 0.0,
    ):
        self.client = client
        self.cursors = cursors
        self.entity_id = entity_id
        self.interval = interval
        self.limit = limit
        self.on_data = on_data
        self.on_error = on_error
        self.on_status_change = on_status_change
        self.initial_delay = initial_delay
        self.jitter = jitter

        self.cursor: Optional[SubscriptionCursor] = None
        self.polls = 0
        self.total_records = 0
        self.errors = 0
        self.last_update: Optional[datetime] = None

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle ---------------------------------------------------------
    def start(self) -> "Subscription":
        self._task = asyncio.create_task(self._run(), name=f"subscription:{self.entity_id}")
        return self

    def stop(self) -> None:
        """Stops scheduling; a poll already in flight runs to completion."""
        if not self._stop.is_set():
            self._stop.set()
            logger.debug(f"[Subscriber] {self.entity_id[:8]} stopped")

    def is_active(self) -> bool:
        return not self._stop.is_set() and self._task is not None and not self._task.done()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    def stats(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "total_records": self.total_records,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "errors": self.errors,
            "polls": self.polls,
            "last_timestamp": format_timestamp(self.cursor.last_timestamp)
            if self.cursor and self.cursor.last_timestamp else None,
        }

    async def _sleep(self, seconds: float) -> bool:
        """Returns True if stop() was called while waiting."""
        if seconds <= 0:
            return self._stop.is_set()
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        if await self._sleep(self.initial_delay):
            return

        self.cursor = await self.cursors.load(self.entity_id)
        if self.cursor and self.cursor.last_timestamp:
            logger.info(
                f"[Subscriber] resuming {self.entity_id[:8]} from {format_timestamp(self.cursor.last_timestamp)}"
            )

        while not self._stop.is_set():
            await self.poll_once()
            if await self._sleep(self.interval + random.uniform(0, self.jitter)):
                break

    # -- one tick ----------------------------------------------------------
    async def poll_once(self) -> List[DataRecord]:
        self.polls += 1
        after = self.cursor.last_timestamp if self.cursor else None
        try:
            records = await self.client.query_records(self.entity_id, limit=self.limit, after_timestamp=after)
        except FeedSignalError as e:
            await self._report_error(e)
            return []
        except Exception as e:
            await self._report_error(UpstreamRequestFailed(str(e), code="SUBSCRIPTION_ERROR"))
            return []

        if after is not None:
            records = [r for r in records if r.created_at >= after]

        if records:
            newest = max(r.created_at for r in records) + CURSOR_STEP
            now = utc_now()
            if self.cursor is None:
                self.cursor = SubscriptionCursor(entity_id=self.entity_id, created_at=now)
            if self.cursor.last_timestamp is None or newest > self.cursor.last_timestamp:
                self.cursor.last_timestamp = newest
            self.cursor.total_records_seen += len(records)
            self.cursor.last_updated_at = now
            await self.cursors.save(self.cursor)

            self.total_records += len(records)
            self.last_update = now
            logger.debug(f"[Subscriber] {self.entity_id[:8]}: {len(records)} new records")
            await self._emit(self.on_data, records, "on_data")

        await self._emit(self.on_status_change, True, "on_status_change")
        return records

    async def _report_error(self, error: FeedSignalError) -> None:
        self.errors += 1
        logger.debug(f"[Subscriber] {self.entity_id[:8]} poll failed: {error}")
        await self._emit(self.on_error, error, "on_error")
        await self._emit(self.on_status_change, False, "on_status_change")

    async def _emit(self, callback: Optional[Callable], arg: Any, name: str) -> None:
        if callback is None:
            return
        try:
            await maybe_await(callback(arg))
        except Exception as e:
            logger.exception(f"[Subscriber] {name} callback for {self.entity_id[:8]} raised: {e}")


class Subscriber:
    """Creates and tracks Subscriptions that share one client and one cursor store."""

    def __init__(self, client: DataSourceClient, cursors: CursorStore):
        self.client = client
        self.cursors = cursors
        self.subscriptions: List[Subscription] = []

    def subscribe(
        self,
        entity_id: str,
        interval: float = 5.0,
        limit: int = 50,
        on_data: Optional[DataCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        initial_delay: float = 0.0,
        jitter: float = 0.0,
    ) -> Subscription:
        subscription = Subscription(
            self.client,
            self.cursors,
            entity_id,
            interval=interval,
            limit=limit,
            on_data=on_data,
            on_error=on_error,
            on_status_change=on_status_change,
            initial_delay=initial_delay,
            jitter=jitter,
        ).start()
        self.subscriptions.append(subscription)
        logger.debug(f"[Subscriber] {entity_id[:8]} started (interval={interval:.1f}s, limit={limit})")
        return subscription

    def stop_all(self) -> None:
        for subscription in self.subscriptions:
            subscription.stop()
        self.subscriptions.clear()

    def active_count(self) -> int:
        return sum(1 for s in self.subscriptions if s.is_active())
