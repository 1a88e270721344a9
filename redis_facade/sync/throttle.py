"""
Single-flight execution with a time-windowed result cache.

Store layout for a logical key ``k``:

- ``redisThrottle:k``      last active timestamp, start of the current window
- ``redisThrottleLock:k``  fenced lock deciding who opens a new window
- ``redisThrottleCache:k`` encoded ``Outcome`` of the window's execution

The leader of a window runs the task, caches the outcome and broadcasts it on
the shared ``redisThrottle`` channel; followers in any process resolve from
the broadcast or, if they arrive late, from the cache.
"""
import asyncio
import logging
import time
from typing import Any, Optional, TYPE_CHECKING

from ..errors import CodecError, ThrottleError
from ..keys import FacadeKind, KeyPrefix
from ..mq.message_queue import Message
from ..utils.codec import Outcome, dump_outcome, load_outcome
from .flow_control import FlowControl, Task, call_task, check_ttl
from .lock import FencedLock, new_token

if TYPE_CHECKING:
    from ..connection import FacadeConnection

logger = logging.getLogger(__name__)


class RedisThrottle(FlowControl):
    kind = FacadeKind.THROTTLE
    channel = KeyPrefix.THROTTLE.value

    def __init__(self, conn: "FacadeConnection", key: str):
        super().__init__(conn, KeyPrefix.THROTTLE.of(key), key)
        self.lock_key = KeyPrefix.THROTTLE_LOCK.of(key)
        self.cache_key = KeyPrefix.THROTTLE_CACHE.of(key)

    @property
    def grace(self) -> int:
        return self.conn.config.throttle.cache_grace

    async def run(self, task: Task, ttl: Optional[int] = None, *args, **kwargs) -> Any:
        """
        Runs ``task`` at most once per ``ttl`` seconds for this key, across
        processes. Every call inside the window gets the result (or raises
        the error) of that single execution.
        """
        ttl = check_ttl(self.conn.config.throttle.default_ttl if ttl is None else ttl, "throttle")

        while True:
            now = int(time.time())
            lock = FencedLock(self.redis, self.lock_key)
            token = new_token()
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.get(self.key)
                pipe.get(self.cache_key)
                pipe.set(self.lock_key, token, nx=True, ex=ttl + self.grace)
                last_active, cache, locked = await pipe.execute()
            if locked:
                lock.token = token

            if now - int(last_active or 0) >= ttl:
                if locked:
                    return await self._lead(lock, task, ttl, now, args, kwargs)
            else:
                if locked:
                    await lock.release()
                if cache is not None:
                    return load_outcome(cache).unwrap()

            outcome = await self._follow(ttl)
            if outcome is not None:
                return outcome.unwrap()
            logger.debug(f"No result for throttle {self.name} within {ttl}s, retrying", extra={"key": self.name})

    async def _lead(self, lock: FencedLock, task: Task, ttl: int, now: int, args: tuple, kwargs: dict) -> Any:
        expiry = ttl + self.grace
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self.key, now, ex=expiry)
                pipe.delete(self.cache_key)
                await pipe.execute()

            try:
                outcome = Outcome(self.name, await call_task(task, args, kwargs))
            except Exception as e:
                outcome = Outcome(self.name, error=e)

            try:
                payload = dump_outcome(outcome)
            except CodecError as e:
                logger.error(f"Throttle {self.name} result cannot be shared: {e}", extra={"key": self.name})
                payload = dump_outcome(Outcome(self.name, error=ThrottleError(f"Result of throttle {self.name} cannot be shared", e)))

            await self.redis.set(self.cache_key, payload, ex=expiry)
            await self.message.publish(payload)
        finally:
            await lock.release()

        return outcome.unwrap()

    async def _follow(self, ttl: int) -> Optional[Outcome]:
        future = asyncio.get_running_loop().create_future()
        waiters = self.conn.throttle_waiters.setdefault(self.name, set())
        waiters.add(future)
        try:
            # the leader may have broadcast before we registered
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.get(self.key)
                pipe.get(self.cache_key)
                last_active, cache = await pipe.execute()
            if cache is not None and last_active is not None and int(time.time()) - int(last_active) < ttl:
                return load_outcome(cache)

            try:
                return await asyncio.wait_for(future, ttl)
            except asyncio.TimeoutError:
                return None
        finally:
            waiters.discard(future)
            if not waiters and self.conn.throttle_waiters.get(self.name) is waiters:
                del self.conn.throttle_waiters[self.name]

    @classmethod
    def on_message(cls, conn: "FacadeConnection", message: Message):
        try:
            outcome = load_outcome(message)
        except CodecError as e:
            logger.error(f"Dropping undecodable throttle broadcast: {e}")
            return
        for future in conn.throttle_waiters.pop(outcome.key, set()):
            if not future.done():
                future.set_result(outcome)

    async def clear(self):
        """Forgets the current window, so the next call runs the task again."""
        await self.redis.delete(self.key, self.cache_key, self.lock_key)

    @classmethod
    async def has(cls, conn: "FacadeConnection", key: str) -> bool:
        return await conn.redis.exists(KeyPrefix.THROTTLE.of(key)) == 1
