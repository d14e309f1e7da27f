"""In-process notifications about server lifecycle and connections.

Each server owns its own bus; nothing is shared between instances.

    bus = EventBus()
    unsubscribe = bus.subscribe(ServerStarted, on_started)
    await bus.publish(ServerStarted, ServerStartedProps(name="...", channels=[...]))

Payloads delivered to subscribers are plain dicts of the form
``{"type": "server.started", "properties": {...}}``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

PropsT = TypeVar("PropsT", bound=BaseModel)

Subscriber = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]

ANY_EVENT = "*"


@dataclass(frozen=True)
class EventDefinition(Generic[PropsT]):
    """An event name bound to the pydantic model of its properties."""

    type: str
    schema: type[PropsT]


def define_event(event_type: str, schema: type[PropsT]) -> EventDefinition[PropsT]:
    return EventDefinition(type=event_type, schema=schema)


class EventBus:
    """Awaits subscribers one at a time.

    Subscribers of the exact event type run first, in the order they
    subscribed, then the ANY_EVENT subscribers. An exception from one
    subscriber is logged and the remaining ones still run.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}

    async def publish(self, event: EventDefinition[PropsT], properties: PropsT) -> None:
        payload = {"type": event.type, "properties": properties.model_dump()}

        # Snapshot: a subscriber may unsubscribe during delivery
        targets = [
            *self._subscribers.get(event.type, ()),
            *self._subscribers.get(ANY_EVENT, ()),
        ]
        for subscriber in targets:
            try:
                await subscriber(payload)
            except Exception:
                logger.exception(f"Subscriber {subscriber!r} failed on {event.type}")

    def subscribe(
        self, event: EventDefinition[PropsT], subscriber: Subscriber
    ) -> Callable[[], None]:
        """Call `subscriber` for every `event` published from now on.

        Returns:
            A callable that removes the subscription; calling it twice is harmless
        """
        return self._add(event.type, subscriber)

    def subscribe_all(self, subscriber: Subscriber) -> Callable[[], None]:
        return self._add(ANY_EVENT, subscriber)

    def _add(self, key: str, subscriber: Subscriber) -> Callable[[], None]:
        bucket = self._subscribers.setdefault(key, [])
        bucket.append(subscriber)

        def remove() -> None:
            current = self._subscribers.get(key)
            if current is not None and subscriber in current:
                current.remove(subscriber)

        return remove

    async def stream(self) -> AsyncIterator[dict[str, Any]]:
        """Async-iterate over every event published once iteration has begun.

            async for event in server.bus.stream():
                print(event["type"])

        Closing the iterator removes its subscription.
        """
        pending: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        remove = self.subscribe_all(pending.put)
        try:
            while True:
                yield await pending.get()
        finally:
            remove()

    def subscriber_count(self) -> int:
        return sum(map(len, self._subscribers.values()))

    def reset(self) -> None:
        self._subscribers.clear()
