import asyncio
import time
import pytest
from pydantic import BaseModel

from redis_facade import ArgumentError, FacadeConfig, RedisThrottleQueue
from redis_facade.common.config import ThrottleQueueConfig
from redis_facade.sync.lock import FencedLock
from redis_facade.utils.codec import signature


class Crawl(BaseModel):
    url: str
    depth: int = 1


@pytest.fixture
def config():
    return FacadeConfig(throttle_queue=ThrottleQueueConfig(interval=0.1, lookback=60))


@pytest.mark.asyncio
async def test_push_deduplicates_structurally_equal_payloads(facade):
    tq = facade.throttle_queue("jobs")

    assert await tq.push({"url": "https://a", "depth": 2}) is True
    assert await tq.push({"depth": 2, "url": "https://a"}) is False
    assert await tq.push(Crawl(url="https://a", depth=2)) is False

    assert await tq.pull(10) == [{"depth": 2, "url": "https://a"}]
    assert await tq.pull(10) == []
    assert await facade.redis.hlen(tq.payload_key) == 0


@pytest.mark.asyncio
async def test_add_returns_signature(facade):
    tq = facade.throttle_queue("jobs")
    sign = await tq.add({"id": 1})
    assert sign == signature({"id": 1})[0]
    assert await tq.add({"id": 1}) == sign
    assert await facade.redis.zcard(tq.key) == 1


@pytest.mark.asyncio
async def test_future_jobs_are_not_due(facade):
    tq = facade.throttle_queue("later")
    assert await tq.push({"id": 1}, start=int(time.time()) + 100) is True
    assert await tq.pull(10) == []
    assert await RedisThrottleQueue.has(facade, "later") is True


@pytest.mark.asyncio
async def test_push_extends_end(facade):
    tq = facade.throttle_queue("extend")
    now = int(time.time())
    data = {"id": 7}
    sign = signature(data)[0]

    assert await tq.push(data, start=now + 100, end=now + 200) is True
    assert await tq.push(data, start=now + 100, end=now + 300) is True
    assert await tq.push(data, start=now + 100, end=now + 250) is False

    stored = await facade.redis.hget(tq.payload_key, sign)
    assert f'"end": {now + 300}' in stored


@pytest.mark.asyncio
async def test_push_validates_arguments(facade):
    tq = facade.throttle_queue("invalid")
    now = int(time.time())
    with pytest.raises(ArgumentError):
        await tq.push({"id": 1}, repeat=0)
    with pytest.raises(ArgumentError):
        await tq.push({"id": 1}, start=now, end=now - 1)


@pytest.mark.asyncio
async def test_delete(facade):
    tq = facade.throttle_queue("cancel")
    sign = await tq.add({"id": 1})
    assert await tq.delete(sign) is True
    assert await tq.delete(sign) is False
    assert await tq.pull(10) == []
    assert await facade.redis.hexists(tq.payload_key, sign) is False


@pytest.mark.asyncio
async def test_repeating_job_is_rescheduled(facade):
    tq = facade.throttle_queue("repeat")
    sign = await tq.add({"id": 1}, repeat=30)
    now = int(time.time())

    assert await tq.pull(10) == [{"id": 1}]
    assert await facade.redis.zscore(tq.key, sign) >= now + 30
    assert await facade.redis.hexists(tq.payload_key, sign) is True
    assert await tq.pull(10) == []


@pytest.mark.asyncio
async def test_expired_job_is_purged(facade):
    tq = facade.throttle_queue("expired")
    now = int(time.time())
    sign = await tq.add({"id": 1}, start=now - 10, repeat=1, end=now - 5)

    assert await tq.pull(10) == []
    assert await facade.redis.zscore(tq.key, sign) is None
    assert await facade.redis.hexists(tq.payload_key, sign) is False


@pytest.mark.asyncio
async def test_jobs_older_than_lookback_are_dropped(facade):
    tq = facade.throttle_queue("stale")
    now = int(time.time())
    await tq.push({"id": "old"}, start=now - 120)
    await tq.push({"id": "recent"}, start=now - 30)

    assert await tq.pull(10) == [{"id": "recent"}]
    assert await facade.redis.zcard(tq.key) == 0
    assert await facade.redis.hlen(tq.payload_key) == 0


@pytest.mark.asyncio
async def test_pull_respects_count_and_order(facade):
    tq = facade.throttle_queue("count")
    now = int(time.time())
    for i in range(3):
        await tq.push({"id": i}, start=now - 10 + i)

    assert await tq.pull(2) == [{"id": 0}, {"id": 1}]
    assert await tq.pull(2) == [{"id": 2}]


@pytest.mark.asyncio
async def test_pull_yields_while_another_process_pulls(facade, other):
    tq = facade.throttle_queue("contended")
    await tq.push({"id": 1})

    lock = FencedLock(other.redis, tq.lock_key)
    assert await lock.acquire(5) is True
    assert await tq.pull(10) == []

    await lock.release()
    assert await tq.pull(10) == [{"id": 1}]


@pytest.mark.asyncio
async def test_start_dispatches_due_jobs(facade, eventually):
    tq = facade.throttle_queue("worker")
    handled = []

    async def handler(data):
        handled.append(data["id"])

    await tq.push({"id": 1})
    await tq.push({"id": 2})
    await tq.start(handler, concurrency=5)
    assert tq.running is True

    await eventually(lambda: sorted(handled) == [1, 2])

    await tq.stop()
    assert tq.running is False
    assert await facade.has(tq.lock_key) is False


@pytest.mark.asyncio
async def test_handler_errors_go_to_on_error(facade, eventually):
    tq = facade.throttle_queue("errors")
    errors = []

    def handler(data):
        raise RuntimeError(f"cannot handle {data['id']}")

    await tq.push({"id": 1})
    await tq.start(handler, on_error=errors.append)
    try:
        await eventually(lambda: len(errors) == 1)
    finally:
        await tq.stop()
    assert str(errors[0]) == "cannot handle 1"


@pytest.mark.asyncio
async def test_start_validates_arguments(facade):
    tq = facade.throttle_queue("args")
    with pytest.raises(ArgumentError):
        await tq.start(print, concurrency=0)
    with pytest.raises(ArgumentError):
        await tq.start(print, interval=0)
    assert tq.running is False


@pytest.mark.asyncio
async def test_clear_and_has(facade):
    tq = facade.throttle_queue("clear")
    await tq.push({"id": 1})
    assert await RedisThrottleQueue.has(facade, "clear") is True
    await tq.clear()
    assert await RedisThrottleQueue.has(facade, "clear") is False
    assert await facade.has(tq.payload_key) is False
