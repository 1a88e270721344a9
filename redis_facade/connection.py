"""
Connection wrapper - owns one backing Redis client and all per-process state
the coordination primitives keep for it
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, Deque, Dict, Optional, Set

import redis.asyncio as redis
from redis.asyncio import Redis

from .common.config import FacadeConfig, RedisConfig, get_settings
from .errors import QueueError, ThrottleError
from .facade import RedisFacade
from .mq.message_queue import RedisMessageQueue
from .mq.registry import PubSubRegistry
from .sync.lock import RedisLock
from .sync.queue import PendingTask, RedisQueue
from .sync.throttle import RedisThrottle
from .sync.throttle_queue import RedisThrottleQueue
from .utils.background import BackgroundTasks
from .utils.codec import to_str

logger = logging.getLogger(__name__)


def create_redis_client(config: RedisConfig) -> Redis:
    pool = redis.ConnectionPool.from_url(
        config.url,
        max_connections=config.pool_size or 100,
    )
    return Redis(connection_pool=pool)


class FacadeConnection:
    """
    Entry point of the library. Everything that must be shared by the
    primitives of one backing connection lives here rather than in module
    globals: the subscriber connection registry, the local pending lists of
    queues, the waiting followers of throttles and the flow-control channels.
    """

    def __init__(self, client: Redis, config: Optional[FacadeConfig] = None):
        self.redis = client
        self.config = config or get_settings()
        self.pubsub = PubSubRegistry(client, self.config.message_queue)
        self.tasks = BackgroundTasks("facade")
        self.queue_tasks: Dict[str, Deque[PendingTask]] = {}
        self.throttle_waiters: Dict[str, Set[asyncio.Future]] = {}
        self._flow_channels: Dict[str, RedisMessageQueue] = {}
        self._closed = False

    @classmethod
    def from_config(cls, config: Optional[FacadeConfig] = None) -> "FacadeConnection":
        config = config or get_settings()
        return cls(create_redis_client(config.redis), config)

    @property
    def closed(self) -> bool:
        return self._closed

    def lock(self, key: str) -> RedisLock:
        return RedisLock(self, key)

    def queue(self, key: str) -> RedisQueue:
        return RedisQueue(self, key)

    def throttle(self, key: str) -> RedisThrottle:
        return RedisThrottle(self, key)

    def message_queue(self, topic: str) -> RedisMessageQueue:
        return RedisMessageQueue(self, topic)

    def throttle_queue(self, key: str) -> RedisThrottleQueue:
        return RedisThrottleQueue(self, key)

    def flow_channel(
        self,
        name: str,
        handler: Callable[["FacadeConnection", Any], Any],
        on_ready: Optional[Callable[["FacadeConnection"], Any]] = None,
    ) -> RedisMessageQueue:
        """The shared channel of a flow-control type, created on first use."""
        channel = self._flow_channels.get(name)
        if channel is None:
            channel = RedisMessageQueue(self, name)
            channel.add_listener(functools.partial(handler, self))
            if on_ready is not None:
                channel.add_ready_listener(functools.partial(on_ready, self))
            self._flow_channels[name] = channel
        return channel

    async def exec(self, cmd: str, key: str, *args: Any) -> Any:
        return await self.redis.execute_command(cmd, key, *args)

    async def has(self, key: str) -> bool:
        return await self.redis.exists(key) > 0

    async def delete(self, key: str) -> bool:
        return await self.redis.delete(key) > 0

    async def typeof(self, key: str) -> str:
        return to_str(await self.redis.type(key))

    def is_same(self, a: RedisFacade, b: RedisFacade) -> bool:
        """True if both facades are the same kind of primitive on the same connection and key."""
        return type(a) is type(b) and a.conn is b.conn and a.key == b.key

    async def close(self):
        """
        Closes the subscriber connection first, then the primary one, and
        fails the queued tasks that can no longer run.
        """
        if self._closed:
            return
        self._closed = True

        await self.pubsub.close()
        for channel in self._flow_channels.values():
            channel.close()
        self._flow_channels.clear()
        await self.tasks.cancel_all()

        for key, tasks in self.queue_tasks.items():
            for pending in tasks:
                pending.settle(error=QueueError(f"Connection closed before queued task on {key} ran"))
        self.queue_tasks.clear()
        for waiters in self.throttle_waiters.values():
            for future in waiters:
                if not future.done():
                    future.set_exception(ThrottleError("Connection closed before the throttled result arrived"))
        self.throttle_waiters.clear()

        await self.redis.aclose()
        logger.info("Facade connection closed")

    quit = close

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def create_facade(client: Optional[Redis] = None, config: Optional[FacadeConfig] = None) -> FacadeConnection:
    """Wraps ``client``, or a client built from ``config.redis``, in a FacadeConnection."""
    if client is None:
        return FacadeConnection.from_config(config)
    return FacadeConnection(client, config)
