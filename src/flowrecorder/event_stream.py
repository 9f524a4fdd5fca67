from __future__ import annotations

from collections import deque
import logging
import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

OverflowCallback = Callable[[int], None]

logger = logging.getLogger("flowrecorder.stream")


class Subscription(Generic[T]):
    """Bounded per-subscriber buffer. Publishing never blocks; the oldest unread item is dropped when full."""

    def __init__(self, capacity: int, on_overflow: OverflowCallback | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[T] = deque()
        self._condition = threading.Condition()
        self._on_overflow = on_overflow
        self._closed = False
        self.dropped = 0

    @property
    def overflowed(self) -> bool:
        return self.dropped > 0

    def offer(self, item: T) -> bool:
        dropped_now = False
        with self._condition:
            if self._closed:
                return False
            if len(self._items) >= self.capacity:
                self._items.popleft()
                self.dropped += 1
                dropped_now = True
            self._items.append(item)
            self._condition.notify()
            total_dropped = self.dropped
        if dropped_now:
            if total_dropped == 1 or total_dropped % 100 == 0:
                logger.warning("Subscriber buffer full (%s); dropped %s unread event(s).", self.capacity, total_dropped)
            if self._on_overflow:
                try:
                    self._on_overflow(total_dropped)
                except Exception:
                    logger.exception("Overflow callback failed.")
        return not dropped_now

    def get(self, timeout: float | None = None) -> T | None:
        with self._condition:
            if not self._items and not self._closed:
                self._condition.wait(timeout)
            if self._items:
                return self._items.popleft()
            return None

    def drain(self) -> list[T]:
        with self._condition:
            items = list(self._items)
            self._items.clear()
            return items

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._condition:
            return len(self._items)


class EventStream(Generic[T]):
    def __init__(self, capacity: int = 500) -> None:
        self.capacity = capacity
        self._subscribers: list[Subscription[T]] = []
        self._lock = threading.Lock()

    def subscribe(self, capacity: int | None = None, on_overflow: OverflowCallback | None = None) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(capacity or self.capacity, on_overflow)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
        subscription.close()

    def publish(self, item: T) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.offer(item)

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription.close()
