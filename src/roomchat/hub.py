from __future__ import annotations

import asyncio
import itertools
import threading
from typing import Dict, List

from .logging import get_logger
from .messages import ChangeEvent
from .topics import Topic

logger = get_logger(__name__)

DEFAULT_MAX_PENDING = 1000


class SubscriptionClosed(Exception):
    pass


class SubscriptionDropped(SubscriptionClosed):
    """The subscriber fell behind its buffer and was removed from the hub."""


class Subscription:
    """One listener's bounded copy of a topic's event stream."""

    _ids = itertools.count(1)

    def __init__(self, topic: Topic, subscriber_id: str, max_pending: int) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be positive")
        self.id = next(self._ids)
        self.topic = topic
        self.subscriber_id = subscriber_id
        self.max_pending = max_pending
        self.closed = False
        self.dropped = False
        # One extra slot so the close sentinel always fits.
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=max_pending + 1)

    def deliver(self, event: ChangeEvent) -> bool:
        if self.closed:
            return False
        if self._queue.qsize() >= self.max_pending:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self, *, dropped: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        self.dropped = dropped
        if dropped:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self, timeout: float | None = None) -> ChangeEvent:
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            # Leave the sentinel in place for any other waiter.
            self._queue.put_nowait(None)
            if self.dropped:
                raise SubscriptionDropped(self.topic.key)
            raise SubscriptionClosed(self.topic.key)
        return item

    def drain(self) -> list[ChangeEvent]:
        """Return every buffered event without waiting."""

        events: list[ChangeEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                self._queue.put_nowait(None)
                break
            events.append(item)
        return events

    def pending(self) -> int:
        return self._queue.qsize() - (1 if self.closed else 0)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        try:
            return await self.get()
        except SubscriptionDropped:
            raise
        except SubscriptionClosed:
            raise StopAsyncIteration from None


class FanoutHub:
    """Topic-keyed publish/subscribe with at-least-once delivery to live listeners.

    There is no backlog: a listener that subscribes after ``publish`` never
    sees that event and must load history from the message store instead.
    ``publish`` never waits on a listener; one whose buffer is full is dropped
    and has to resubscribe.

    Subscription queues belong to the event loop that was running when the
    first subscription was made. ``publish`` may be called from any thread;
    calls from outside that loop are handed to it with
    ``call_soon_threadsafe`` and return 0 because delivery happens later.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._max_pending = max_pending
        self._lock = threading.RLock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._topics: Dict[str, Topic] = {}

    def subscribe(self, topic: Topic, subscriber_id: str = "", max_pending: int | None = None) -> Subscription:
        subscription = Subscription(topic, subscriber_id, max_pending or self._max_pending)
        with self._lock:
            if self._loop is None:
                self._loop = _running_loop()
            self._subscriptions.setdefault(topic.key, []).append(subscription)
            self._topics[topic.key] = topic
        logger.debug("subscribed", topic=topic.key, subscriber_id=subscriber_id, subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._off_loop():
            self._loop.call_soon_threadsafe(self.unsubscribe, subscription)
            return
        with self._lock:
            subscription.close()
            self._detach(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """Hand ``event`` to every listener of its topic; return how many took it."""

        if self._off_loop():
            self._loop.call_soon_threadsafe(self._deliver, event)
            return 0
        return self._deliver(event)

    def subscriber_count(self, topic: Topic) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic.key, []))

    def topics(self) -> list[Topic]:
        with self._lock:
            return [self._topics[key] for key in self._subscriptions]

    def _off_loop(self) -> bool:
        loop = self._loop
        if loop is None or loop.is_closed() or not loop.is_running():
            return False
        return _running_loop() is not loop

    def _deliver(self, event: ChangeEvent) -> int:
        delivered = 0
        with self._lock:
            for subscription in list(self._subscriptions.get(event.topic.key, [])):
                if subscription.deliver(event):
                    delivered += 1
                    continue
                if subscription.closed:
                    self._detach(subscription)
                    continue
                logger.warning(
                    "subscriber_dropped",
                    topic=event.topic.key,
                    subscriber_id=subscription.subscriber_id,
                    subscription_id=subscription.id,
                    max_pending=subscription.max_pending,
                )
                subscription.close(dropped=True)
                self._detach(subscription)
        return delivered

    def _detach(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic.key)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic.key, None)
            self._topics.pop(subscription.topic.key, None)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
