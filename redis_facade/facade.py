"""
Facade base - shared capability interface of every coordination primitive
"""
from __future__ import annotations

from abc import ABC
from typing import TYPE_CHECKING, Any, ClassVar, List, Sequence

from redis.asyncio import Redis

from .keys import FacadeKind

if TYPE_CHECKING:
    from .connection import FacadeConnection


class RedisFacade(ABC):
    """
    A facade is bound to one connection and one store key. The concrete
    primitives form a closed set, tagged by ``kind``.
    """

    kind: ClassVar[FacadeKind]

    def __init__(self, conn: "FacadeConnection", key: str):
        self.conn = conn
        self.key = key

    @property
    def redis(self) -> Redis:
        return self.conn.redis

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.key!r})"

    async def exec(self, cmd: str, *args: Any) -> Any:
        """Executes a command on the current key; the key is injected as first argument."""
        return await self.redis.execute_command(cmd, self.key, *args)

    async def batch(self, *cmds: Sequence[Any]) -> List[Any]:
        """
        Executes several commands on the current key in one MULTI/EXEC
        transaction and returns their replies in order.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            for cmd in cmds:
                name, *args = cmd
                pipe.execute_command(name, self.key, *args)
            return await pipe.execute()

    async def set_ttl(self, seconds: int) -> int:
        """Sets time-to-live in seconds; returns -1 if the key does not exist."""
        ok = await self.exec("EXPIRE", seconds)
        return seconds if ok else -1

    async def get_ttl(self) -> int:
        return await self.exec("TTL")

    async def clear(self):
        await self.exec("DEL")
