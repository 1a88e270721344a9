import asyncio
import inspect
import time

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from redis_facade import FacadeConfig, create_facade


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def config():
    return FacadeConfig()


@pytest_asyncio.fixture
async def facade(server, config):
    conn = create_facade(FakeRedis(server=server, decode_responses=True), config)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def other(server, config):
    """A second process talking to the same store."""
    conn = create_facade(FakeRedis(server=server, decode_responses=True), config)
    yield conn
    await conn.close()


@pytest.fixture
def eventually():
    async def wait(predicate, timeout: float = 3.0, interval: float = 0.02):
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)
    return wait
