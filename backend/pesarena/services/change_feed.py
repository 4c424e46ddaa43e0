"""
Change Feed

In-process push feed behind the stores' watch() operations. Every
subscriber owns a queue; publishers offer new record versions under one or
more keys and each matching subscription receives them in order.

Subscriptions are explicit handles: close() detaches them from the feed,
and a closed subscription yields None from next() so waiters unblock.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Set

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]

_CLOSED = object()


class Subscription:
    """
    Handle for one watcher.

    Usage:
        async with feed.subscribe(key, predicate) as subscription:
            record = await subscription.next()
    """

    def __init__(self, feed: "ChangeFeed", key: Hashable, predicate: Optional[Predicate] = None):
        self._feed = feed
        self.key = key
        self._predicate = predicate
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, record: Any) -> bool:
        """
        Enqueue a record if the predicate accepts it.

        Returns:
            True when the record was delivered
        """
        if self._closed:
            return False
        if self._predicate is not None and not self._predicate(record):
            return False
        self._queue.put_nowait(record)
        return True

    async def next(self) -> Optional[Any]:
        """Wait for the next matching record; None once closed."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        """Detach from the feed. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._feed._detach(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        record = await self.next()
        if record is None:
            raise StopAsyncIteration
        return record

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChangeFeed:
    """Key-addressed fan-out of record updates to live subscriptions."""

    def __init__(self, name: str = "feed"):
        self._name = name
        self._subscriptions: Dict[Hashable, Set[Subscription]] = defaultdict(set)

    def subscribe(self, key: Hashable, predicate: Optional[Predicate] = None) -> Subscription:
        subscription = Subscription(self, key, predicate)
        self._subscriptions[key].add(subscription)
        logger.debug(f"[{self._name}] subscribed to {key}")
        return subscription

    def publish(self, keys: Iterable[Optional[Hashable]], record: Any) -> int:
        """
        Offer a record to every subscription on the given keys.

        A subscription registered under several of the keys is offered the
        record once. Empty keys are skipped.

        Returns:
            Number of deliveries
        """
        targets = []
        seen = set()
        for key in keys:
            if not key:
                continue
            for subscription in list(self._subscriptions.get(key, ())):
                if id(subscription) not in seen:
                    seen.add(id(subscription))
                    targets.append(subscription)

        delivered = sum(1 for subscription in targets if subscription.offer(record))
        if delivered:
            logger.debug(f"[{self._name}] delivered update to {delivered} subscriber(s)")
        return delivered

    def _detach(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.key)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.key]

    def get_active_subscription_count(self) -> int:
        """Get number of open subscriptions."""
        return sum(len(subscribers) for subscribers in self._subscriptions.values())
