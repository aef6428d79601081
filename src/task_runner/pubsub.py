"""
Topic publish/subscribe used for event-triggered tasks.

Usage:
    bus = EventBus()

    bus.subscribe("user:login", on_login)
    bus.subscribe("user:*", on_any_user_event)

    await bus.publish("user:login", {"user_id": "123"})

Subscribers matching one publish run concurrently. A failing subscriber is
logged and never affects its siblings or the publisher.
"""

import asyncio
import inspect
import logging
import re
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Union

logger = logging.getLogger(__name__)

PubSubCallback = Callable[[str, Any], Union[Awaitable[None], None]]


@lru_cache(maxsize=256)
def _compile_topic(pattern: str) -> Pattern[str]:
    # '*' is the only wildcard, everything else matches literally
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def matches_topic(event: str, pattern: str) -> bool:
    if pattern == event:
        return True
    if "*" in pattern:
        return _compile_topic(pattern).match(event) is not None
    return False


class EventBus:
    def __init__(self) -> None:
        # dict values keep insertion order and act as ordered sets
        self._subscribers: Dict[str, Dict[PubSubCallback, None]] = {}

    def subscribe(self, topic: str, callback: PubSubCallback) -> Callable[[], bool]:
        """Subscribe to a topic. Supports '*' wildcards: 'user:*', '*'."""
        self._subscribers.setdefault(topic, {})[callback] = None

        def unsubscribe() -> bool:
            return self.unsubscribe(topic, callback)

        return unsubscribe

    def unsubscribe(self, topic: str, callback: PubSubCallback) -> bool:
        callbacks = self._subscribers.get(topic)
        if callbacks is None or callback not in callbacks:
            return False
        del callbacks[callback]
        if not callbacks:
            del self._subscribers[topic]
        return True

    async def publish(self, event: str, data: Any = None) -> None:
        """
        Deliver an event to every matching subscriber and wait for all of them to settle.
        """
        matching: Dict[PubSubCallback, None] = {}
        for topic, callbacks in list(self._subscribers.items()):
            if matches_topic(event, topic):
                for callback in callbacks:
                    matching[callback] = None

        if not matching:
            return

        results = await asyncio.gather(
            *(self._call(callback, event, data) for callback in matching),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Error in pub/sub callback for event {event}: {result}", exc_info=result)

    def get_subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return sum(len(callbacks) for callbacks in self._subscribers.values())
        return len(self._subscribers.get(topic, {}))

    def get_topics(self) -> List[str]:
        return list(self._subscribers.keys())

    @staticmethod
    async def _call(callback: PubSubCallback, event: str, data: Any) -> None:
        result = callback(event, data)
        if inspect.isawaitable(result):
            await result
