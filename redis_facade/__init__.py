"""
redis-facade - cross-process coordination primitives on top of Redis.

Quick start
-----------
    import asyncio
    from redis.asyncio import Redis
    from redis_facade import create_facade

    async def main():
        async with create_facade(Redis()) as facade:
            lock = facade.lock("job:export-report")
            if await lock.acquire(ttl=30):
                try:
                    ...
                finally:
                    await lock.release()

            # at most one execution per 60 seconds, across all processes
            report = await facade.throttle("report").run(build_report, 60)

            # tasks on the same key run one after another
            await facade.queue("account:42").run(charge, 30, amount)

    asyncio.run(main())
"""
from .common.config import FacadeConfig, get_settings, load_config, update_settings
from .connection import FacadeConnection, create_facade, create_redis_client
from .errors import (
    RedisFacadeError, ArgumentError, ConfigError, LockError, QueueError, ThrottleError,
    MessageQueueError, CodecError
)
from .facade import RedisFacade
from .keys import FacadeKind, KeyPrefix
from .mq import RedisMessageQueue, PubSubRegistry
from .sync import FencedLock, RedisLock, RedisQueue, RedisThrottle, RedisThrottleQueue
from .utils.logger import setup_logging, setup_logging_from_config

__version__ = "0.1.0"

__all__ = [
    'FacadeConfig',
    'get_settings',
    'load_config',
    'update_settings',
    'FacadeConnection',
    'create_facade',
    'create_redis_client',
    'RedisFacadeError',
    'ArgumentError',
    'ConfigError',
    'LockError',
    'QueueError',
    'ThrottleError',
    'MessageQueueError',
    'CodecError',
    'RedisFacade',
    'FacadeKind',
    'KeyPrefix',
    'RedisMessageQueue',
    'PubSubRegistry',
    'FencedLock',
    'RedisLock',
    'RedisQueue',
    'RedisThrottle',
    'RedisThrottleQueue',
    'setup_logging',
    'setup_logging_from_config',
]
