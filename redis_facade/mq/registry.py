"""
Subscriber connection registry.

One ``PubSubRegistry`` belongs to one ``FacadeConnection``. It owns the single
dedicated subscriber connection of that backing connection and multiplexes
every channel subscribed through it:

- ``register(mq)`` adds a message queue to its topic, subscribing the topic
  the first time it is seen;
- the reader task turns SUBSCRIBE confirmations into the ``ready`` state
  (flushing buffered messages) and fans MESSAGE frames out to the subscribers;
- ``unregister(mq)`` unsubscribes the topic once its last subscriber leaves;
- ``close()`` drains and closes the subscriber connection. It must run before
  the primary connection is closed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Set

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from ..common.config import MessageQueueConfig
from ..utils.background import BackgroundTasks
from ..utils.codec import to_str

if TYPE_CHECKING:
    from .message_queue import RedisMessageQueue

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ChannelRegistration:
    topic: str
    ready: bool = False
    subscribers: Set["RedisMessageQueue"] = field(default_factory=set)
    ready_event: asyncio.Event = field(default_factory=asyncio.Event)

    def mark_ready(self, ready: bool):
        self.ready = ready
        if ready:
            self.ready_event.set()
        else:
            self.ready_event.clear()


class PubSubRegistry:
    def __init__(self, redis: Redis, config: Optional[MessageQueueConfig] = None):
        self.redis = redis
        self.config = config or MessageQueueConfig()
        self.channels: Dict[str, ChannelRegistration] = {}
        self._pubsub: Optional[PubSub] = None
        self._reader: Optional[asyncio.Task] = None
        self._tasks = BackgroundTasks("pubsub")
        # PubSub.connect() must not race, so (un)subscribe commands go one at a time
        self._command_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, mq: "RedisMessageQueue") -> ChannelRegistration:
        channel = self.channels.get(mq.topic)
        if channel is None:
            channel = ChannelRegistration(mq.topic)
            self.channels[mq.topic] = channel
            self._tasks.spawn(self._subscribe(mq.topic))
        channel.subscribers.add(mq)
        return channel

    def unregister(self, mq: "RedisMessageQueue") -> bool:
        channel = self.channels.get(mq.topic)
        if channel is None or mq not in channel.subscribers:
            return False
        channel.subscribers.discard(mq)
        if not channel.subscribers:
            del self.channels[mq.topic]
            if not self._closed:
                self._tasks.spawn(self._unsubscribe(mq.topic))
        return True

    def _connection(self) -> PubSub:
        if self._pubsub is None:
            self._pubsub = self.redis.pubsub()
        return self._pubsub

    async def _subscribe(self, topic: str):
        async with self._command_lock:
            await self._connection().subscribe(topic)
        logger.debug(f"Subscribing to {topic}", extra={"topic": topic})
        if self._reader is None and not self._closed:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _unsubscribe(self, topic: str):
        # re-registered while the unsubscribe was pending
        async with self._command_lock:
            if topic in self.channels or self._pubsub is None:
                return
            await self._pubsub.unsubscribe(topic)

    async def _read_loop(self):
        while not self._closed:
            try:
                message = await self._pubsub.get_message(timeout=self.config.poll_timeout)
            except asyncio.CancelledError:
                break
            except RedisError as e:
                logger.error(f"Subscriber connection error: {e}")
                await asyncio.sleep(self.config.retry_delay)
                continue
            except Exception as e:
                logger.error(f"Unexpected error reading subscriber connection: {e}")
                await asyncio.sleep(self.config.retry_delay)
                continue

            if message is not None:
                await self._dispatch(message)

    async def _dispatch(self, message: dict):
        kind = to_str(message.get("type"))
        topic = to_str(message.get("channel"))
        channel = self.channels.get(topic)
        if channel is None:
            return

        if kind == "subscribe":
            channel.mark_ready(True)
            for subscriber in list(channel.subscribers):
                try:
                    await subscriber._on_ready()
                except Exception as e:
                    logger.error(f"Failed to flush buffered messages of {topic}: {e}", extra={"topic": topic})
        elif kind == "message":
            for subscriber in list(channel.subscribers):
                subscriber._deliver(message.get("data"))

    async def close(self):
        """Stops the reader and closes the subscriber connection."""
        if self._closed:
            return
        self._closed = True

        for channel in self.channels.values():
            channel.mark_ready(False)
            for subscriber in channel.subscribers:
                subscriber._ready = False

        await self._tasks.cancel_all()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
            except RedisError as e:
                logger.warning(f"Error unsubscribing on close: {e}")
            await self._pubsub.aclose()
            self._pubsub = None
        logger.debug("Subscriber connection closed")
