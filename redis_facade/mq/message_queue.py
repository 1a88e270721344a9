import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING, Union

from ..errors import MessageQueueError
from ..facade import RedisFacade
from ..keys import FacadeKind
from ..utils.codec import to_str

if TYPE_CHECKING:
    from ..connection import FacadeConnection

logger = logging.getLogger(__name__)

Message = Union[str, bytes]
Listener = Callable[[Message], Union[None, Awaitable[None]]]


class RedisMessageQueue(RedisFacade):
    """
    A pub/sub channel bound to ``topic``.

    All message queues of a connection share one subscriber connection (see
    ``PubSubRegistry``). Messages published before the store confirms the
    subscription are buffered on the instance and re-published, in order,
    once it does.

    Must be created from inside a running event loop, since creating the
    first queue of a topic schedules the SUBSCRIBE.
    """
    kind = FacadeKind.MESSAGE_QUEUE

    def __init__(self, conn: "FacadeConnection", topic: str):
        super().__init__(conn, topic)
        self.topic = topic
        # dict keeps insertion order and gives set semantics
        self._listeners: Dict[Listener, None] = {}
        self._queued: List[Message] = []
        self._ready_listeners: List[Callable[[], Any]] = []
        self._flush_lock = asyncio.Lock()
        self._closed = False

        try:
            asyncio.get_running_loop()
        except RuntimeError as e:
            raise MessageQueueError(f"Message queue {topic} must be created inside a running event loop", e) from e
        if conn.pubsub.closed:
            raise MessageQueueError(f"Cannot subscribe to {topic}, connection is closed")

        self._channel = conn.pubsub.register(self)
        self._ready = self._channel.ready

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def pending(self) -> int:
        """Number of messages waiting for the subscription to be confirmed."""
        return len(self._queued)

    def add_listener(self, listener: Listener) -> "RedisMessageQueue":
        self._listeners[listener] = None
        return self

    def remove_listener(self, listener: Listener) -> bool:
        if listener not in self._listeners:
            return False
        del self._listeners[listener]
        return True

    async def publish(self, message: Message) -> bool:
        if self._closed or self.conn.pubsub.closed:
            raise MessageQueueError(f"Message queue {self.topic} is closed")
        if not self._ready:
            self._queued.append(message)
        elif self._queued:
            # left over from a flush that failed, keep the order
            self._queued.append(message)
            await self._flush()
        else:
            await self.redis.publish(self.topic, message)
        return True

    async def wait_ready(self, timeout: Optional[float] = None):
        """Waits until the store has confirmed the subscription of this topic."""
        await asyncio.wait_for(self._channel.ready_event.wait(), timeout)

    def add_ready_listener(self, listener: Callable[[], Any]) -> "RedisMessageQueue":
        """Called once this queue's subscription is confirmed."""
        self._ready_listeners.append(listener)
        return self

    async def _flush(self):
        async with self._flush_lock:
            while self._queued:
                await self.redis.publish(self.topic, self._queued[0])
                self._queued.pop(0)

    async def _on_ready(self):
        try:
            await self._flush()
        finally:
            # a failed flush is retried by the next publish
            self._ready = True
            for listener in self._ready_listeners:
                try:
                    listener()
                except Exception:
                    logger.exception(f"Ready listener of {self.topic} failed", extra={"topic": self.topic})
        logger.debug(f"Subscribed to {self.topic}", extra={"topic": self.topic})

    def _deliver(self, data: Any):
        for listener in list(self._listeners):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    self.conn.tasks.spawn(self._await_listener(result))
            except Exception:
                logger.exception(f"Listener of {self.topic} failed", extra={"topic": self.topic})

    async def _await_listener(self, result: Awaitable):
        try:
            await result
        except Exception:
            logger.exception(f"Listener of {self.topic} failed", extra={"topic": self.topic})

    def close(self):
        """Detaches from the topic; the last queue of a topic unsubscribes it."""
        if self._closed:
            return
        self._closed = True
        self._ready = False
        self._listeners.clear()
        self._queued.clear()
        self.conn.pubsub.unregister(self)

    @classmethod
    async def has(cls, conn: "FacadeConnection", topic: str) -> bool:
        """True if the store reports at least one subscriber on ``topic``."""
        channels = await conn.redis.pubsub_channels()
        return topic in {to_str(c) for c in channels}
