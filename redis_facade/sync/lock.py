import logging
from typing import Optional, TYPE_CHECKING
from uuid6 import uuid7
from redis.asyncio import Redis

from ..errors import LockError
from ..facade import RedisFacade
from ..keys import FacadeKind, KeyPrefix

if TYPE_CHECKING:
    from ..connection import FacadeConnection

logger = logging.getLogger(__name__)


RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def new_token() -> str:
    return str(uuid7())


async def compare_and_delete(redis: Redis, key: str, token: str) -> bool:
    """Deletes ``key`` only if it still holds ``token``, in one server-side step."""
    return bool(await redis.eval(RELEASE_SCRIPT, 1, key, token))


class FencedLock:
    """
    A lock that remembers the token it wrote, so that a holder whose TTL
    lapsed cannot delete a lock acquired by somebody else afterwards.
    """
    def __init__(self, redis: Redis, key: str):
        self.redis = redis
        self.key = key
        self.token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self.token is not None

    async def acquire(self, ttl: int = 0) -> bool:
        token = new_token()
        ok = await self.redis.set(self.key, token, nx=True, ex=ttl if ttl > 0 else None)
        if ok:
            self.token = token
            return True
        return False

    async def release(self) -> bool:
        if self.token is None:
            return False
        token, self.token = self.token, None
        released = await compare_and_delete(self.redis, self.key, token)
        if not released:
            logger.warning(f"Lock {self.key} was taken over before release", extra={"key": self.key})
        return released


class RedisLock(RedisFacade):
    """
    Cross-process mutual exclusion on one key.

    ``release()`` deletes the lock unconditionally: only the holder is
    expected to call it, from inside its critical section.
    """
    kind = FacadeKind.LOCK

    def __init__(self, conn: "FacadeConnection", key: str):
        super().__init__(conn, KeyPrefix.LOCK.of(key))
        self.name = key

    async def acquire(self, ttl: int = 0) -> bool:
        """
        Tries to gain the lock. With ``ttl > 0`` the lock is force-released
        after ``ttl`` seconds, so a crashed holder cannot block forever.
        """
        ok = await self.redis.set(self.key, new_token(), nx=True, ex=ttl if ttl > 0 else None)
        return bool(ok)

    async def release(self):
        await self.clear()

    @classmethod
    async def has(cls, conn: "FacadeConnection", key: str) -> bool:
        return await conn.redis.exists(KeyPrefix.LOCK.of(key)) == 1

    async def __aenter__(self):
        if not await self.acquire(self.conn.config.lock.default_ttl):
            raise LockError(f"Could not acquire lock {self.name}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
