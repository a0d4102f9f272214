import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Union

from loguru import logger

from .models import EventKind, PipelineEvent

EventCallback = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Delivers pipeline events to downstream consumers subscribed by event kind."""

    def __init__(self):
        self._subscribers: Dict[EventKind, List[EventCallback]] = defaultdict(list)
        self.delivered: Dict[EventKind, int] = defaultdict(int)

    def subscribe(self, kind: Union[EventKind, str], callback: EventCallback) -> Callable[[], None]:
        """Returns a function that removes the subscription."""
        kind = EventKind(kind)
        self._subscribers[kind].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[kind]:
                self._subscribers[kind].remove(callback)

        return unsubscribe

    async def publish(self, event: PipelineEvent) -> None:
        for callback in list(self._subscribers.get(event.kind, ())):
            try:
                result: Any = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # a failing consumer must not stall the pipeline
                logger.exception(f"[EventBus] consumer of {event.kind.value} raised: {e}")
        self.delivered[event.kind] += 1
