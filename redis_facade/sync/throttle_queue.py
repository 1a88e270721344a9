"""
Time-scheduled, deduplicated, optionally recurring jobs.

Store layout for a queue key ``k``:

- ``redisThrottleQueue:k``          ZSET  signature → next run time (seconds)
- ``redisThrottleQueuePayload:k``   HASH  signature → {"data", "end", "repeat"} json
- ``redisThrottleQueueLock:k``      fenced lock around one pull
- ``redisThrottleQueueLock:k:<sig>`` fenced lock around one push of a payload

A payload's signature is the md5 of its canonical JSON, so pushing a
structurally equal payload again never schedules a second job.
"""
import asyncio
import inspect
import json
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, TYPE_CHECKING, Union

from redis.exceptions import RedisError

from ..errors import ArgumentError
from ..facade import RedisFacade
from ..keys import FacadeKind, KeyPrefix
from ..utils.background import BackgroundTasks
from ..utils.codec import signature, to_str
from .lock import FencedLock

if TYPE_CHECKING:
    from ..connection import FacadeConnection

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]
ErrorHandler = Callable[[Exception], Union[None, Awaitable[None]]]


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class RedisThrottleQueue(RedisFacade):
    kind = FacadeKind.THROTTLE_QUEUE

    def __init__(self, conn: "FacadeConnection", key: str):
        super().__init__(conn, KeyPrefix.THROTTLE_QUEUE.of(key))
        self.name = key
        self.payload_key = KeyPrefix.THROTTLE_QUEUE_PAYLOAD.of(key)
        self.lock_key = KeyPrefix.THROTTLE_QUEUE_LOCK.of(key)
        self.lock_ttl = conn.config.throttle_queue.lock_ttl
        self.lookback = conn.config.throttle_queue.lookback
        self.running = False
        self._pull_lock = FencedLock(self.redis, self.lock_key)
        self._task: Optional[asyncio.Task] = None
        self._dispatches = BackgroundTasks(f"throttle queue {key}")

    async def push(
        self,
        data: Any,
        start: Optional[int] = None,
        repeat: Optional[int] = None,
        end: Optional[int] = None,
    ) -> bool:
        """
        Schedules ``data`` to be handled at ``start`` (default: now), then
        every ``repeat`` seconds until ``end`` (unix seconds) if given.

        Returns True if the push registered a new job or extended the end
        time of an existing one, False if it changed nothing.
        """
        sign, _ = await self._push(data, start, repeat, end)
        return sign is not None

    async def add(
        self,
        data: Any,
        start: Optional[int] = None,
        repeat: Optional[int] = None,
        end: Optional[int] = None,
    ) -> str:
        """Like ``push()`` but returns the payload signature, the job's identity."""
        _, sign = await self._push(data, start, repeat, end)
        return sign

    async def _push(self, data, start, repeat, end):
        now = int(time.time())
        # a job meant to run now must not be postponed by a later duplicate push
        immediate = start is None
        start = now if immediate else int(start)
        if repeat is not None and repeat <= 0:
            raise ArgumentError("The 'repeat' of a scheduled task must be greater than 0")
        if end is not None and end < start:
            raise ArgumentError("The 'end' of a scheduled task must not be earlier than its 'start'")

        sign, text = signature(data)
        record = {"data": json.loads(text), "end": end, "repeat": repeat}

        lock = FencedLock(self.redis, KeyPrefix.THROTTLE_QUEUE_LOCK.of(self.name, sign))
        if not await lock.acquire(self.lock_ttl):
            return None, sign

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hsetnx(self.payload_key, sign, json.dumps(record))
                pipe.zadd(self.key, {sign: start}, nx=immediate)
                created, added = await pipe.execute()

            if added:
                if not created:
                    # leftover payload of a job that is no longer registered
                    await self.redis.hset(self.payload_key, sign, json.dumps(record))
                logger.debug(f"Scheduled {sign} at {start}", extra={"key": self.name})
                return sign, sign
            if created:
                return sign, sign

            stored = await self.redis.hget(self.payload_key, sign)
            if stored is None:
                return None, sign
            existing = json.loads(stored)
            if end is not None and existing.get("end") is not None and end > existing["end"]:
                existing["end"] = end
                await self.redis.hset(self.payload_key, sign, json.dumps(existing))
                return sign, sign
            return None, sign
        finally:
            await lock.release()

    async def delete(self, sign: str) -> bool:
        """Cancels the job with signature ``sign``."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.key, sign)
            pipe.hdel(self.payload_key, sign)
            removed, _ = await pipe.execute()
        return bool(removed)

    async def pull(self, count: int = 1) -> List[Any]:
        """
        Takes up to ``count`` due jobs, rescheduling repeating ones and
        removing the rest. Returns an empty list while another process is
        pulling.
        """
        if not await self._pull_lock.acquire(self.lock_ttl):
            return []

        try:
            now = int(time.time())
            floor = now - self.lookback
            await self._purge_before(floor)

            signs = [to_str(s) for s in await self.redis.zrangebyscore(self.key, f"({floor}", now)]
            if not signs:
                return []

            records = await self.redis.hmget(self.payload_key, signs)
            items: List[Any] = []
            async with self.redis.pipeline(transaction=True) as pipe:
                for sign, raw in zip(signs, records):
                    if raw is None:
                        pipe.zrem(self.key, sign)
                        continue

                    record = json.loads(raw)
                    end = record.get("end")
                    if end is not None and end < now:
                        pipe.zrem(self.key, sign)
                        pipe.hdel(self.payload_key, sign)
                        continue

                    items.append(record["data"])
                    if record.get("repeat"):
                        pipe.zadd(self.key, {sign: now + record["repeat"]})
                    else:
                        pipe.zrem(self.key, sign)
                        pipe.hdel(self.payload_key, sign)

                    if len(items) == count:
                        break
                if len(pipe):
                    await pipe.execute()
            return items
        finally:
            await self._pull_lock.release()

    async def _purge_before(self, floor: int):
        stale = await self.redis.zrangebyscore(self.key, "-inf", floor)
        if not stale:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(self.key, "-inf", floor)
            pipe.hdel(self.payload_key, *stale)
            await pipe.execute()
        logger.warning(f"Dropped {len(stale)} jobs older than the lookback window", extra={"key": self.name})

    async def start(
        self,
        handler: Handler,
        concurrency: Optional[int] = None,
        interval: Optional[float] = None,
        on_error: Optional[ErrorHandler] = None,
    ):
        """
        Polls every ``interval`` seconds for up to ``concurrency`` due jobs
        and hands each job's data to ``handler``. Jobs of one poll are spread
        evenly over the interval.
        """
        defaults = self.conn.config.throttle_queue
        concurrency = defaults.concurrency if concurrency is None else concurrency
        interval = defaults.interval if interval is None else interval
        if concurrency < 1:
            raise ArgumentError("The 'concurrency' of a throttle queue must not be smaller than 1")
        if interval <= 0:
            raise ArgumentError("The 'interval' of a throttle queue must be greater than 0")

        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._poll_loop(handler, concurrency, interval, on_error))
        logger.info(f"Throttle queue {self.name} started", extra={"key": self.name})

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pull_lock.held:
            try:
                await self._pull_lock.release()
            except RedisError as e:
                logger.warning(f"Failed to release pull lock of {self.name}: {e}", extra={"key": self.name})
        logger.info(f"Throttle queue {self.name} stopped", extra={"key": self.name})

    async def _poll_loop(self, handler: Handler, concurrency: int, interval: float, on_error: Optional[ErrorHandler]):
        while self.running:
            await asyncio.sleep(interval)
            try:
                items = await self.pull(concurrency)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error pulling throttle queue {self.name}: {e}", extra={"key": self.name})
                continue

            step = interval / len(items) if items else 0
            for i, data in enumerate(items):
                self._dispatches.spawn(self._dispatch(handler, data, i * step, on_error))

    async def _dispatch(self, handler: Handler, data: Any, delay: float, on_error: Optional[ErrorHandler]):
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await _maybe_await(handler(data))
        except Exception as e:
            if on_error is None:
                logger.exception(f"Handler of throttle queue {self.name} failed", extra={"key": self.name})
                return
            try:
                await _maybe_await(on_error(e))
            except Exception:
                logger.exception(f"Error handler of throttle queue {self.name} failed", extra={"key": self.name})

    async def clear(self):
        await self.redis.delete(self.key, self.payload_key)

    @classmethod
    async def has(cls, conn: "FacadeConnection", key: str) -> bool:
        return to_str(await conn.redis.type(KeyPrefix.THROTTLE_QUEUE.of(key))) == "zset"
