import asyncio
import pytest

from fakeredis.aioredis import FakeRedis
from redis.exceptions import ConnectionError

from redis_facade import FacadeConnection, MessageQueueError, RedisMessageQueue


@pytest.mark.asyncio
async def test_publish_before_subscription_is_buffered(facade, eventually):
    mq = facade.message_queue("events")
    received = []
    mq.add_listener(received.append)

    # 1. Not subscribed yet, messages are kept in order
    assert mq.ready is False
    assert await mq.publish("a") is True
    assert await mq.publish("b") is True
    assert mq.pending == 2

    # 2. Confirmation flushes them
    await mq.wait_ready(2)
    assert mq.ready is True
    assert mq.pending == 0
    await eventually(lambda: len(received) == 2)
    assert received == ["a", "b"]

    # 3. Published directly once ready
    await mq.publish("c")
    await eventually(lambda: len(received) == 3)
    assert received == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_failing_listener_does_not_affect_others(facade, eventually):
    mq = facade.message_queue("isolated")
    received = []
    async_received = []

    def broken(message):
        raise RuntimeError("listener bug")

    async def async_listener(message):
        async_received.append(message)

    mq.add_listener(broken).add_listener(received.append).add_listener(async_listener)
    await mq.publish("hello")

    await eventually(lambda: received == ["hello"] and async_received == ["hello"])


@pytest.mark.asyncio
async def test_remove_listener(facade, eventually):
    mq = facade.message_queue("removal")
    kept = []
    removed = []
    mq.add_listener(kept.append).add_listener(removed.append)

    assert mq.remove_listener(removed.append) is True
    assert mq.remove_listener(removed.append) is False

    await mq.publish("x")
    await eventually(lambda: kept == ["x"])
    assert removed == []


@pytest.mark.asyncio
async def test_queues_on_one_topic_share_the_subscription(facade, eventually):
    first = facade.message_queue("fanout")
    await first.wait_ready(2)
    second = facade.message_queue("fanout")
    assert second.ready is True

    got_first = []
    got_second = []
    first.add_listener(got_first.append)
    second.add_listener(got_second.append)

    await second.publish("both")
    await eventually(lambda: got_first == ["both"] and got_second == ["both"])


@pytest.mark.asyncio
async def test_messages_cross_connections(facade, other, eventually):
    receiver = other.message_queue("cross")
    received = []
    receiver.add_listener(received.append)
    await receiver.wait_ready(2)

    sender = facade.message_queue("cross")
    await sender.publish("ping")
    await eventually(lambda: received == ["ping"])


@pytest.mark.asyncio
async def test_has_tracks_subscribers(facade, eventually):
    assert await RedisMessageQueue.has(facade, "presence") is False

    mq = facade.message_queue("presence")
    await mq.wait_ready(2)
    assert await RedisMessageQueue.has(facade, "presence") is True

    mq.close()
    await eventually(lambda: _not(RedisMessageQueue.has(facade, "presence")))


async def _not(awaitable):
    return not await awaitable


@pytest.mark.asyncio
async def test_publish_after_close_raises(facade):
    mq = facade.message_queue("closed")
    mq.close()
    with pytest.raises(MessageQueueError):
        await mq.publish("late")


@pytest.mark.asyncio
async def test_publish_after_connection_close_raises(facade):
    mq = facade.message_queue("gone")
    await facade.close()
    with pytest.raises(MessageQueueError):
        await mq.publish("late")
    with pytest.raises(MessageQueueError):
        facade.message_queue("gone")


def test_message_queue_requires_running_loop(server):
    conn = FacadeConnection(FakeRedis(server=server, decode_responses=True))
    with pytest.raises(MessageQueueError):
        conn.message_queue("no-loop")


@pytest.mark.asyncio
async def test_failed_flush_is_retried_by_next_publish(facade, eventually, monkeypatch):
    mq = facade.message_queue("flaky")
    received = []
    mq.add_listener(received.append)

    await mq.publish("a")
    await mq.publish("b")

    publish = facade.redis.publish
    failures = [ConnectionError("connection reset")]

    async def flaky_publish(channel, message):
        if failures:
            raise failures.pop()
        return await publish(channel, message)

    monkeypatch.setattr(facade.redis, "publish", flaky_publish)

    # the flush on subscribe fails, the queue must not stay stuck
    await eventually(lambda: mq.ready)
    assert mq.pending == 2

    await mq.publish("after")
    assert mq.pending == 0
    await eventually(lambda: len(received) == 3)
    assert received == ["a", "b", "after"]
