import asyncio
import logging
import time
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple
from .backend import KeyValueStore

logger = logging.getLogger(__name__)

class MemoryStore(KeyValueStore):
    """
    In-memory implementation of KeyValueStore.
    Useful for local development and testing without Redis.

    Each method runs without yielding to the event loop, which gives the same
    per-call atomicity as the Redis commands it mirrors. Expiry is soft: an
    entry is dropped when it is read after its deadline, or by sweep().
    """
    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._values: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        # key -> absolute expiry in ms, shared by both key kinds
        self._expiry: Dict[str, int] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    def _now(self) -> int:
        return int(self._clock() * 1000)

    def _purge(self, key: str) -> bool:
        """Remove key if expired, return True if it was"""
        deadline = self._expiry.get(key)
        if deadline is not None and self._now() >= deadline:
            self._drop(key)
            return True
        return False

    def _drop(self, key: str) -> bool:
        existed = key in self._values or key in self._zsets
        self._values.pop(key, None)
        self._zsets.pop(key, None)
        self._expiry.pop(key, None)
        return existed

    def _exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._values or key in self._zsets

    def _zset(self, key: str) -> Dict[str, float]:
        self._purge(key)
        return self._zsets.get(key, {})

    def _sorted(self, key: str) -> List[Tuple[str, float]]:
        return sorted(self._zset(key).items(), key=lambda item: (item[1], item[0]))

    @staticmethod
    def _rank_slice(items: list, start: int, end: int) -> list:
        n = len(items)
        if start < 0:
            start = max(n + start, 0)
        if end < 0:
            end = n + end
        end = min(end, n - 1)
        if start > end:
            return []
        return items[start:end + 1]

    def sweep(self) -> int:
        """Drop every expired key, returns how many were removed"""
        now = self._now()
        expired = [key for key, deadline in self._expiry.items() if now >= deadline]
        for key in expired:
            self._drop(key)
        return len(expired)

    async def time_ms(self) -> int:
        return self._now()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        for queues in self._subscribers.values():
            for queue in queues:
                queue.put_nowait(None)
        self._subscribers.clear()

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        return self._values.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl_ms: Optional[int] = None,
        only_if_exists: bool = False,
    ) -> bool:
        if only_if_exists and not self._exists(key):
            return False
        self._zsets.pop(key, None)
        self._values[key] = value
        if ttl_ms:
            self._expiry[key] = self._now() + ttl_ms
        else:
            self._expiry.pop(key, None)
        return True

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if self._exists(key):
            return False
        self._values[key] = value
        self._expiry[key] = self._now() + ttl_ms
        return True

    async def delete(self, key: str) -> bool:
        self._purge(key)
        return self._drop(key)

    async def increment(self, key: str, amount: int = 1) -> int:
        self._purge(key)
        value = int(self._values.get(key, "0")) + amount
        self._values[key] = str(value)
        return value

    async def expire(self, key: str, ttl_ms: int) -> bool:
        if not self._exists(key):
            return False
        self._expiry[key] = self._now() + ttl_ms
        return True

    async def ttl_ms(self, key: str) -> Optional[int]:
        if not self._exists(key):
            return None
        deadline = self._expiry.get(key)
        if deadline is None:
            return None
        return max(deadline - self._now(), 0)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        self._purge(key)
        if self._values.get(key) != expected:
            return False
        self._drop(key)
        return True

    async def extend_if_equals(self, key: str, expected: str, additional_ms: int) -> Optional[int]:
        self._purge(key)
        if self._values.get(key) != expected:
            return None
        now = self._now()
        remaining = max(self._expiry.get(key, now) - now, 0)
        new_ttl = remaining + additional_ms
        self._expiry[key] = now + new_ttl
        return new_ttl

    async def zadd(self, key: str, member: str, score: float) -> int:
        self._purge(key)
        self._values.pop(key, None)
        zset = self._zsets.setdefault(key, {})
        added = 0 if member in zset else 1
        zset[member] = float(score)
        return added

    async def zrem(self, key: str, member: str) -> bool:
        zset = self._zset(key)
        if member not in zset:
            return False
        del zset[member]
        if not zset:
            self._drop(key)
        return True

    async def zpopmin(self, key: str) -> Optional[Tuple[str, float]]:
        items = self._sorted(key)
        if not items:
            return None
        member, score = items[0]
        await self.zrem(key, member)
        return member, score

    async def zrange(self, key: str, start: int, end: int, desc: bool = False) -> List[str]:
        items = self._sorted(key)
        if desc:
            items.reverse()
        return [member for member, _ in self._rank_slice(items, start, end)]

    async def zrange_with_scores(self, key: str, start: int, end: int) -> List[Tuple[str, float]]:
        return self._rank_slice(self._sorted(key), start, end)

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        return [m for m, s in self._sorted(key) if min_score <= s <= max_score]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._zset(key)
        doomed = [m for m, s in zset.items() if min_score <= s <= max_score]
        for member in doomed:
            del zset[member]
        if key in self._zsets and not zset:
            self._drop(key)
        return len(doomed)

    async def zremrangebyrank(self, key: str, start: int, end: int) -> int:
        doomed = self._rank_slice(self._sorted(key), start, end)
        zset = self._zsets.get(key, {})
        for member, _ in doomed:
            del zset[member]
        if key in self._zsets and not zset:
            self._drop(key)
        return len(doomed)

    async def zcard(self, key: str) -> int:
        return len(self._zset(key))

    async def publish(self, channel: str, message: str) -> int:
        queues = self._subscribers.get(channel, [])
        for queue in queues:
            queue.put_nowait(message)
        return len(queues)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[channel].append(queue)
        try:
            while True:
                message = await queue.get()
                if message is None:
                    break
                yield message
        finally:
            if queue in self._subscribers.get(channel, []):
                self._subscribers[channel].remove(queue)
