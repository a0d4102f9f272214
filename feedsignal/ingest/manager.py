import random
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger

from .client import DataSourceClient
from .subscriber import Subscriber, Subscription, maybe_await
from ..core.errors import FeedSignalError, UpstreamRateLimited
from ..core.models import DataRecord, EntityInfo, SourceRecord

RecordCallback = Callable[[SourceRecord, EntityInfo], Union[None, Awaitable[None]]]


class SubscriptionManager:
    """
    One Subscription per tracked entity.

    Starting many entities at once staggers their first polls by
    index * subscription_start_delay and gives each its own interval of
    subscription_interval + uniform(0, interval_jitter), so polls spread out
    over time instead of arriving in bursts.
    """

    def __init__(self, client: DataSourceClient, subscriber: Subscriber, datasource_config: Optional[Dict[str, Any]] = None):
        self.client = client
        self.subscriber = subscriber
        self.config = datasource_config or {}
        self.entities: List[EntityInfo] = []
        self.subscriptions: Dict[str, Subscription] = {}

        self.base_interval = float(self.config.get("subscription_interval", 180.0))
        self.interval_jitter = float(self.config.get("interval_jitter", 120.0))
        self.start_delay = float(self.config.get("subscription_start_delay", 5.0))
        self.limit = int(self.config.get("limit", 40))

    async def initialize(self) -> List[EntityInfo]:
        logger.info("[SubscriptionManager] fetching entity list...")
        self.entities = await self.client.list_entities()
        logger.info(f"[SubscriptionManager] found {len(self.entities)} entities")
        return self.entities

    # -- lookup ------------------------------------------------------------
    def get_entity(self, entity_id: str) -> Optional[EntityInfo]:
        return next((e for e in self.entities if e.entity_id == entity_id), None)

    def available_entities(self) -> List[EntityInfo]:
        return list(self.entities)

    def find_entity_by_name(self, name: str) -> Optional[EntityInfo]:
        needle = name.strip().lower()
        if not needle:
            return None
        for entity in self.entities:
            if needle in entity.display_name.lower() or needle in entity.entity_id.lower():
                return entity
        return None

    # -- subscriptions -----------------------------------------------------
    def start_subscription(
        self,
        entity_id: str,
        callback: RecordCallback,
        initial_delay: float = 0.0,
        interval: Optional[float] = None,
    ) -> Optional[Subscription]:
        entity = self.get_entity(entity_id)
        if entity is None:
            logger.error(f"[SubscriptionManager] entity {entity_id} does not exist")
            return None

        existing = self.subscriptions.get(entity_id)
        if existing is not None:
            logger.warning(f"[SubscriptionManager] {entity.name} is already subscribed")
            return existing

        async def on_data(records: List[DataRecord]) -> None:
            logger.info(f"[SubscriptionManager] {entity.name} received {len(records)} new records")
            for record in sorted(records, key=lambda r: r.created_at):
                await maybe_await(callback(record.to_source_record(entity), entity))

        def on_error(error: FeedSignalError) -> None:
            if isinstance(error, UpstreamRateLimited):
                logger.warning(f"[SubscriptionManager] {entity.name} hit the rate limit, retrying on next poll")
            else:
                logger.error(f"[SubscriptionManager] {entity.name} subscription error: {error}")

        def on_status_change(connected: bool) -> None:
            logger.debug(f"[SubscriptionManager] {entity.name} status: {'connected' if connected else 'disconnected'}")

        subscription = self.subscriber.subscribe(
            entity_id,
            interval=self.base_interval if interval is None else interval,
            limit=self.limit,
            on_data=on_data,
            on_error=on_error,
            on_status_change=on_status_change,
            initial_delay=initial_delay,
        )
        self.subscriptions[entity_id] = subscription
        logger.info(f"[SubscriptionManager] subscribed to {entity.name} (first poll in {initial_delay:.1f}s)")
        return subscription

    def start_all_subscriptions(self, callback: RecordCallback, entity_ids: Optional[Iterable[str]] = None) -> int:
        targets = self.entities
        if entity_ids:
            wanted = set(entity_ids)
            targets = [e for e in self.entities if e.entity_id in wanted]
            missing = wanted - {e.entity_id for e in targets}
            for entity_id in sorted(missing):
                logger.error(f"[SubscriptionManager] entity {entity_id} does not exist")

        logger.info(
            f"[SubscriptionManager] starting {len(targets)} subscriptions "
            f"(interval={self.base_interval:.0f}s + up to {self.interval_jitter:.0f}s, start delay={self.start_delay:.1f}s)"
        )
        started = 0
        for i, entity in enumerate(targets):
            if entity.entity_id in self.subscriptions:
                logger.warning(f"[SubscriptionManager] {entity.name} is already subscribed")
                continue
            subscription = self.start_subscription(
                entity.entity_id,
                callback,
                initial_delay=i * self.start_delay,
                interval=self.base_interval + random.uniform(0, self.interval_jitter),
            )
            if subscription is not None:
                started += 1
        return started

    def stop_all_subscriptions(self) -> None:
        self.subscriber.stop_all()
        self.subscriptions.clear()
        logger.info("[SubscriptionManager] all subscriptions stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "total_entities": len(self.entities),
            "active_subscriptions": len(self.subscriptions),
            "entities": [
                {
                    "id": e.entity_id,
                    "name": e.display_name,
                    "type": e.data_type.value,
                    "count": e.count,
                    "subscribed": e.entity_id in self.subscriptions,
                }
                for e in self.entities
            ],
        }
