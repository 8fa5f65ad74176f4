from .backend import KeyValueStore, INF
from .redis_backend import RedisStore
from .memory_backend import MemoryStore

__all__ = [
    'KeyValueStore',
    'INF',
    'RedisStore',
    'MemoryStore',
]
