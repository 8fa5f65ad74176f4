"""
Key-value / pub-sub store - Abstract interface shared by every coordination service
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Tuple

INF = float("inf")

class KeyValueStore(ABC):
    """
    Atomic primitives the coordination layer is built on.
    Every implementation must make each single call atomic with respect to
    concurrent callers in other processes; all TTLs are milliseconds.
    """

    @abstractmethod
    async def time_ms(self) -> int:
        """Current time according to the store"""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    # --- plain keys ---

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        ttl_ms: Optional[int] = None,
        only_if_exists: bool = False,
    ) -> bool:
        """Set value; with only_if_exists the write is skipped for a missing key"""
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def increment(self, key: str, amount: int = 1) -> int:
        pass

    @abstractmethod
    async def expire(self, key: str, ttl_ms: int) -> bool:
        pass

    @abstractmethod
    async def ttl_ms(self, key: str) -> Optional[int]:
        """Remaining TTL, None when the key is missing or never expires"""
        pass

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """Compare-and-delete"""
        pass

    @abstractmethod
    async def extend_if_equals(self, key: str, expected: str, additional_ms: int) -> Optional[int]:
        """Adds additional_ms to the remaining TTL if the value matches; returns the new TTL"""
        pass

    # --- sorted sets ---

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> int:
        pass

    @abstractmethod
    async def zrem(self, key: str, member: str) -> bool:
        """True only for the caller that actually removed the member"""
        pass

    @abstractmethod
    async def zpopmin(self, key: str) -> Optional[Tuple[str, float]]:
        pass

    @abstractmethod
    async def zrange(self, key: str, start: int, end: int, desc: bool = False) -> List[str]:
        pass

    @abstractmethod
    async def zrange_with_scores(self, key: str, start: int, end: int) -> List[Tuple[str, float]]:
        pass

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        pass

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        pass

    @abstractmethod
    async def zremrangebyrank(self, key: str, start: int, end: int) -> int:
        pass

    @abstractmethod
    async def zcard(self, key: str) -> int:
        pass

    # --- pub/sub ---

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish message, returns the number of receivers"""
        pass

    @abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Subscribe to channel and yield messages"""
        pass
