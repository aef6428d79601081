import asyncio
from typing import Any, List, Tuple

import pytest

from task_runner.pubsub import EventBus, matches_topic


@pytest.mark.parametrize(
    "event, pattern, expected",
    [
        ("user:login", "user:login", True),
        ("user:login", "user:*", True),
        ("user:logout", "user:*", True),
        ("admin:login", "user:*", False),
        ("anything", "*", True),
        ("order.created", "order.*", True),
        ("orderXcreated", "order.*", False),
        ("user:login", "user:logout", False),
        ("a:b:c", "a:*:c", True),
    ],
)
def test_matches_topic(event, pattern, expected):
    assert matches_topic(event, pattern) is expected


@pytest.mark.asyncio
async def test_publish_delivers_to_exact_and_wildcard_subscribers():
    bus = EventBus()
    received: List[Tuple[str, str, Any]] = []

    bus.subscribe("user:login", lambda event, data: received.append(("exact", event, data)))
    bus.subscribe("user:*", lambda event, data: received.append(("wildcard", event, data)))
    bus.subscribe("admin:*", lambda event, data: received.append(("admin", event, data)))

    await bus.publish("user:login", {"user_id": "123"})
    await bus.publish("user:logout")

    assert ("exact", "user:login", {"user_id": "123"}) in received
    assert ("wildcard", "user:login", {"user_id": "123"}) in received
    assert ("wildcard", "user:logout", None) in received
    assert not any(kind == "admin" for kind, _, _ in received)
    assert len(received) == 3


@pytest.mark.asyncio
async def test_async_subscribers_are_awaited():
    bus = EventBus()
    done = []

    async def slow(event, data):
        await asyncio.sleep(0.05)
        done.append(data)

    bus.subscribe("job:*", slow)
    await bus.publish("job:finished", 42)

    assert done == [42]


@pytest.mark.asyncio
async def test_callback_matching_several_topics_runs_once():
    bus = EventBus()
    calls = []

    def callback(event, data):
        calls.append(event)

    bus.subscribe("user:login", callback)
    bus.subscribe("user:*", callback)
    bus.subscribe("*", callback)

    await bus.publish("user:login")
    assert calls == ["user:login"]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others(caplog):
    bus = EventBus()
    calls = []

    def broken(event, data):
        raise RuntimeError("subscriber exploded")

    async def broken_async(event, data):
        raise ValueError("async subscriber exploded")

    bus.subscribe("user:login", broken)
    bus.subscribe("user:login", broken_async)
    bus.subscribe("user:login", lambda event, data: calls.append(event))

    await bus.publish("user:login")

    assert calls == ["user:login"]
    assert "subscriber exploded" in caplog.text
    assert "async subscriber exploded" in caplog.text


@pytest.mark.asyncio
async def test_publish_without_subscribers():
    bus = EventBus()
    await bus.publish("nobody:listening", {"ignored": True})
    assert bus.get_subscriber_count() == 0


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    calls = []

    def callback(event, data):
        calls.append(event)

    unsubscribe = bus.subscribe("user:login", callback)
    assert unsubscribe() is True
    assert unsubscribe() is False
    assert bus.unsubscribe("user:login", callback) is False

    await bus.publish("user:login")
    assert calls == []


def test_subscriber_counts_and_topics():
    bus = EventBus()

    def first(event, data):
        pass

    def second(event, data):
        pass

    bus.subscribe("user:login", first)
    bus.subscribe("user:login", second)
    bus.subscribe("user:login", second)
    bus.subscribe("user:*", first)

    assert bus.get_subscriber_count() == 3
    assert bus.get_subscriber_count("user:login") == 2
    assert bus.get_subscriber_count("user:*") == 1
    assert bus.get_subscriber_count("missing") == 0
    assert bus.get_topics() == ["user:login", "user:*"]

    bus.unsubscribe("user:*", first)
    assert bus.get_topics() == ["user:login"]
