"""
Serialized task execution per key across processes.

Tasks live only in the memory of the process that submitted them; the store
holds nothing but a fenced lock. Whoever holds the lock runs the head of its
own pending list, releases the lock and broadcasts the key on the shared
``redisQueue`` channel so that every process with pending tasks for the key
competes for the next turn.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Optional, TYPE_CHECKING

from ..keys import FacadeKind, KeyPrefix
from ..mq.message_queue import Message, RedisMessageQueue
from ..utils.codec import to_str
from .flow_control import FlowControl, Task, call_task, check_ttl
from .lock import FencedLock

if TYPE_CHECKING:
    from ..connection import FacadeConnection

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PendingTask:
    task: Task
    ttl: int
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    future: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    def settle(self, result: Any = None, error: Optional[BaseException] = None):
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)


class RedisQueue(FlowControl):
    kind = FacadeKind.QUEUE
    channel = KeyPrefix.QUEUE.value

    def __init__(self, conn: "FacadeConnection", key: str):
        super().__init__(conn, KeyPrefix.QUEUE.of(key), key)

    async def run(self, task: Task, ttl: Optional[int] = None, *args, **kwargs) -> Any:
        """
        Queues ``task`` and runs it once every task queued before it on this
        key (by this process) has completed.

        ``ttl`` bounds, in seconds, how long the task may hold the queue lock
        before another process may take over.
        """
        ttl = check_ttl(self.conn.config.queue.default_ttl if ttl is None else ttl, "queue")
        pending = PendingTask(task, ttl, args, kwargs)
        self.conn.queue_tasks.setdefault(self.name, deque()).append(pending)
        self.conn.tasks.spawn(self.try_task(self.conn, self.name))
        try:
            return await pending.future
        except asyncio.CancelledError:
            self._discard(pending)
            raise

    def _discard(self, pending: PendingTask):
        tasks = self.conn.queue_tasks.get(self.name)
        if tasks is None or pending not in tasks:
            return
        tasks.remove(pending)
        if not tasks:
            del self.conn.queue_tasks[self.name]

    @classmethod
    def on_message(cls, conn: "FacadeConnection", message: Message):
        key = to_str(message)
        if key in conn.queue_tasks:
            conn.tasks.spawn(cls.try_task(conn, key))

    @classmethod
    def on_ready(cls, conn: "FacadeConnection"):
        # wake-ups published before the subscription was confirmed are lost
        for key in list(conn.queue_tasks):
            conn.tasks.spawn(cls.try_task(conn, key))

    @staticmethod
    def _head(tasks: Deque[PendingTask]) -> Optional[PendingTask]:
        """First task whose caller is still waiting; cancelled ones are dropped."""
        while tasks and tasks[0].future.done():
            tasks.popleft()
        return tasks[0] if tasks else None

    @classmethod
    async def try_task(cls, conn: "FacadeConnection", key: str):
        tasks = conn.queue_tasks.get(key)
        if tasks is None:
            return
        head = cls._head(tasks)
        if head is None:
            if conn.queue_tasks.get(key) is tasks:
                del conn.queue_tasks[key]
            return

        lock = FencedLock(conn.redis, KeyPrefix.QUEUE.of(key))
        if not await lock.acquire(head.ttl):
            # the current holder broadcasts once it is done
            return

        pending = None
        outcome = None
        try:
            if cls._head(tasks) is not None:
                pending = tasks.popleft()
                try:
                    outcome = (await call_task(pending.task, pending.args, pending.kwargs), None)
                except Exception as e:
                    outcome = (None, e)
        finally:
            try:
                # skipped by the fence if the ttl lapsed and someone else took over
                await lock.release()
            finally:
                if pending is not None:
                    if outcome is None:
                        pending.future.cancel()
                    else:
                        pending.settle(*outcome)
                if not tasks and conn.queue_tasks.get(key) is tasks:
                    del conn.queue_tasks[key]

        await conn.flow_channel(cls.channel, cls.on_message, cls.on_ready).publish(key)

    @classmethod
    async def has(cls, conn: "FacadeConnection", key: str) -> bool:
        return await RedisMessageQueue.has(conn, cls.channel) and key in conn.queue_tasks
