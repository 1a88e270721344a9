import inspect
from abc import abstractmethod
from typing import Any, Awaitable, Callable, ClassVar, Optional, TYPE_CHECKING, Union

from ..errors import ArgumentError
from ..facade import RedisFacade
from ..mq.message_queue import Message, RedisMessageQueue

if TYPE_CHECKING:
    from ..connection import FacadeConnection

Task = Callable[..., Union[Any, Awaitable[Any]]]


async def call_task(task: Task, args: tuple, kwargs: dict) -> Any:
    result = task(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def check_ttl(ttl: int, name: str) -> int:
    if ttl < 1:
        raise ArgumentError(f"The 'ttl' for {name} must not be smaller than 1")
    return int(ttl)


class FlowControl(RedisFacade):
    """
    Base of the primitives that coordinate task execution across processes.

    Every subclass owns one channel per connection (named by ``channel``),
    shared by all of its instances; ``on_message`` and ``on_ready`` are
    attached once, when the first instance is created on a connection.
    """
    channel: ClassVar[str]

    def __init__(self, conn: "FacadeConnection", key: str, name: str):
        super().__init__(conn, key)
        self.name = name
        self.message: RedisMessageQueue = conn.flow_channel(self.channel, self.on_message, self.on_ready)

    @classmethod
    @abstractmethod
    def on_message(cls, conn: "FacadeConnection", message: Message) -> Optional[Awaitable[None]]:
        ...

    @classmethod
    def on_ready(cls, conn: "FacadeConnection"):
        """Called once the channel subscription of ``conn`` is confirmed."""

    @abstractmethod
    async def run(self, task: Task, ttl: Optional[int] = None, *args, **kwargs) -> Any:
        ...
