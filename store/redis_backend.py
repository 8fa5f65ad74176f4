"""
Redis implementation of KeyValueStore
"""
import logging
from contextlib import contextmanager
from typing import AsyncIterator, List, Optional, Tuple
from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError, WatchError
from errors import StoreError
from .backend import KeyValueStore

logger = logging.getLogger(__name__)

# optimistic transactions give up after this many concurrent modifications
CAS_RETRIES = 5

class RedisStore(KeyValueStore):
    """Redis-based coordination store"""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", pool_size: Optional[int] = None):
        self.redis_url = redis_url
        self._pool = ConnectionPool.from_url(
            redis_url,
            decode_responses=True,
            max_connections=pool_size or 100,
        )
        self._redis: Redis = Redis(connection_pool=self._pool)

    @classmethod
    def from_config(cls, config) -> "RedisStore":
        return cls(config.redis.url, pool_size=config.redis.pool_size)

    @contextmanager
    def _errors(self, op: str, key: str):
        try:
            yield
        except RedisError as e:
            raise StoreError(f"Redis {op} failed for {key}", e)

    async def close(self):
        """Cleanup connections"""
        await self._redis.aclose()
        await self._pool.disconnect()

    async def ping(self) -> bool:
        with self._errors("PING", "-"):
            return bool(await self._redis.ping())

    async def time_ms(self) -> int:
        with self._errors("TIME", "-"):
            seconds, micros = await self._redis.time()
        return int(seconds) * 1000 + int(micros) // 1000

    async def get(self, key: str) -> Optional[str]:
        with self._errors("GET", key):
            return await self._redis.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl_ms: Optional[int] = None,
        only_if_exists: bool = False,
    ) -> bool:
        with self._errors("SET", key):
            result = await self._redis.set(key, value, px=ttl_ms, xx=only_if_exists)
        return bool(result)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """SET NX PX"""
        with self._errors("SET NX", key):
            result = await self._redis.set(key, value, nx=True, px=ttl_ms)
        return bool(result)

    async def delete(self, key: str) -> bool:
        with self._errors("DEL", key):
            return bool(await self._redis.delete(key))

    async def increment(self, key: str, amount: int = 1) -> int:
        with self._errors("INCRBY", key):
            return int(await self._redis.incrby(key, amount))

    async def expire(self, key: str, ttl_ms: int) -> bool:
        with self._errors("PEXPIRE", key):
            return bool(await self._redis.pexpire(key, ttl_ms))

    async def ttl_ms(self, key: str) -> Optional[int]:
        with self._errors("PTTL", key):
            ttl = await self._redis.pttl(key)
        # -2: missing, -1: no expiry
        return ttl if ttl >= 0 else None

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """Compare-and-delete using WATCH + MULTI + EXEC"""
        with self._errors("CAS DEL", key):
            for _ in range(CAS_RETRIES):
                async with self._redis.pipeline() as pipe:
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        if current != expected:
                            await pipe.unwatch()
                            return False

                        pipe.multi()
                        pipe.delete(key)
                        await pipe.execute()
                        return True
                    except WatchError:
                        logger.debug(f"Concurrent modification of {key} during compare-and-delete, retrying")
                        continue
        return False

    async def extend_if_equals(self, key: str, expected: str, additional_ms: int) -> Optional[int]:
        with self._errors("CAS PEXPIRE", key):
            for _ in range(CAS_RETRIES):
                async with self._redis.pipeline() as pipe:
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        if current != expected:
                            await pipe.unwatch()
                            return None

                        remaining = await pipe.pttl(key)
                        new_ttl = max(remaining, 0) + additional_ms
                        pipe.multi()
                        pipe.pexpire(key, new_ttl)
                        await pipe.execute()
                        return new_ttl
                    except WatchError:
                        logger.debug(f"Concurrent modification of {key} during extension, retrying")
                        continue
        return None

    async def zadd(self, key: str, member: str, score: float) -> int:
        with self._errors("ZADD", key):
            return int(await self._redis.zadd(key, {member: score}))

    async def zrem(self, key: str, member: str) -> bool:
        with self._errors("ZREM", key):
            return bool(await self._redis.zrem(key, member))

    async def zpopmin(self, key: str) -> Optional[Tuple[str, float]]:
        with self._errors("ZPOPMIN", key):
            popped = await self._redis.zpopmin(key, 1)
        if not popped:
            return None
        member, score = popped[0]
        return member, float(score)

    async def zrange(self, key: str, start: int, end: int, desc: bool = False) -> List[str]:
        with self._errors("ZRANGE", key):
            return list(await self._redis.zrange(key, start, end, desc=desc))

    async def zrange_with_scores(self, key: str, start: int, end: int) -> List[Tuple[str, float]]:
        with self._errors("ZRANGE", key):
            items = await self._redis.zrange(key, start, end, withscores=True)
        return [(member, float(score)) for member, score in items]

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        with self._errors("ZRANGEBYSCORE", key):
            return list(await self._redis.zrangebyscore(key, min_score, max_score))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        with self._errors("ZREMRANGEBYSCORE", key):
            return int(await self._redis.zremrangebyscore(key, min_score, max_score))

    async def zremrangebyrank(self, key: str, start: int, end: int) -> int:
        with self._errors("ZREMRANGEBYRANK", key):
            return int(await self._redis.zremrangebyrank(key, start, end))

    async def zcard(self, key: str) -> int:
        with self._errors("ZCARD", key):
            return int(await self._redis.zcard(key))

    async def publish(self, channel: str, message: str) -> int:
        with self._errors("PUBLISH", channel):
            return int(await self._redis.publish(channel, message))

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Subscribe to a Redis channel and yield message payloads"""
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        with self._errors("SUBSCRIBE", channel):
            await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except RedisError as e:
                logger.warning(f"Error closing subscription to {channel}: {e}")
