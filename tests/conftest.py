import os
import sys

import pytest

# ensure project root on path for imports
sys.path.append(os.getcwd())

from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from errors import StoreError
from store import MemoryStore, RedisStore


class ManualClock:
    """Clock for MemoryStore that only moves when told to"""
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: int):
        self.now += ms / 1000


class UnreachableStore(MemoryStore):
    """Every command fails the way RedisStore does when Redis is down"""
    calls = 0


def _unreachable(op: str):
    async def command(self, *args, **kwargs):
        self.calls += 1
        raise StoreError(f"Redis {op} failed", ConnectionError("Connection refused"))
    return command


for _op in (
    "time_ms", "ping", "get", "set", "set_if_absent", "delete", "increment", "expire", "ttl_ms",
    "delete_if_equals", "extend_if_equals", "zadd", "zrem", "zpopmin", "zrange", "zrange_with_scores",
    "zrangebyscore", "zremrangebyscore", "zremrangebyrank", "zcard", "publish",
):
    setattr(UnreachableStore, _op, _unreachable(_op.upper()))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def unreachable_store(clock):
    return UnreachableStore(clock=clock)


@pytest.fixture
def redis_store():
    store = RedisStore("redis://localhost:6379/0")
    # inject fake redis for testing
    store._redis = FakeRedis(server=FakeServer(), decode_responses=True)
    return store
