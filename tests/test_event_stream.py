import threading

import pytest

from flowrecorder.event_stream import EventStream, Subscription


def test_full_buffer_drops_oldest_and_signals_overflow() -> None:
    overflows: list[int] = []
    subscription: Subscription[int] = Subscription(2, on_overflow=overflows.append)

    assert subscription.offer(1)
    assert subscription.offer(2)
    assert not subscription.offer(3)

    assert subscription.drain() == [2, 3]
    assert subscription.dropped == 1
    assert subscription.overflowed
    assert overflows == [1]


def test_slow_subscriber_does_not_affect_others() -> None:
    stream: EventStream[int] = EventStream(capacity=10)
    slow = stream.subscribe(capacity=1)
    fast = stream.subscribe()

    for value in range(5):
        stream.publish(value)

    assert fast.drain() == [0, 1, 2, 3, 4]
    assert slow.drain() == [4]
    assert slow.dropped == 4
    assert not fast.overflowed


def test_get_times_out_and_close_unblocks_waiters() -> None:
    stream: EventStream[str] = EventStream()
    subscription = stream.subscribe()
    assert subscription.get(timeout=0.01) is None

    results: list[str | None] = []
    waiter = threading.Thread(target=lambda: results.append(subscription.get(timeout=5)))
    waiter.start()
    stream.close()
    waiter.join(timeout=5)

    assert results == [None]
    assert subscription.closed
    assert not subscription.offer("late")


def test_unsubscribe_stops_delivery() -> None:
    stream: EventStream[int] = EventStream()
    subscription = stream.subscribe()
    stream.publish(1)
    stream.unsubscribe(subscription)
    stream.publish(2)

    assert subscription.drain() == [1]


def test_overflow_callback_errors_are_contained() -> None:
    def explode(_dropped: int) -> None:
        raise RuntimeError("ui gone")

    subscription: Subscription[int] = Subscription(1, on_overflow=explode)
    subscription.offer(1)
    subscription.offer(2)
    assert subscription.drain() == [2]


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        Subscription(0)
