import logging
from typing import Optional, TYPE_CHECKING
from .config import settings, AppConfig

if TYPE_CHECKING:
    from store import KeyValueStore
    from sync import LockService, PresenceService
    from mq import PubSubService, QueueService
    from engine.session import SessionCoordinator

logger = logging.getLogger(__name__)


class State:
    _instance: Optional['State'] = None

    def __init__(self, config: Optional[AppConfig] = None):
        self.config: AppConfig = config or settings
        self.store: Optional['KeyValueStore'] = None
        self.locks: Optional['LockService'] = None
        self.presence: Optional['PresenceService'] = None
        self.pubsub: Optional['PubSubService'] = None
        self.queue: Optional['QueueService'] = None
        self.sessions: Optional['SessionCoordinator'] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @classmethod
    def get(cls) -> 'State':
        if cls._instance is None:
            cls._instance = State()
        return cls._instance

    @classmethod
    def reset(cls):
        cls._instance = None

    def _create_store(self) -> 'KeyValueStore':
        from store import MemoryStore, RedisStore

        if self.config.store_backend == "memory":
            logger.warning("Using in-memory store: coordination is limited to this process")
            return MemoryStore()
        return RedisStore.from_config(self.config)

    async def init(self, store: Optional['KeyValueStore'] = None):
        if self._initialized:
            return

        self.store = store or self._create_store()
        try:
            await self.store.ping()
        except Exception as e:
            # services report store failures per call; health shows the outage
            logger.error(f"Store not reachable at startup: {e}")

        from sync import LockService, PresenceService
        from mq import PubSubService, QueueService
        from engine.session import SessionCoordinator

        self.locks = LockService(self.store, self.config.locks)
        self.presence = PresenceService(self.store, self.config.presence)
        self.pubsub = PubSubService(self.store, self.config.pubsub)
        self.queue = QueueService(self.store, self.config.queue)
        self.sessions = SessionCoordinator(self.locks, self.presence, self.pubsub, self.queue)

        self._initialized = True
        logger.info(f"State initialized for node {self.config.node_id} ({type(self.store).__name__})")

    async def close(self):
        if self.store:
            await self.store.close()
        self._initialized = False

# Global accessor
def get_state() -> State:
    return State.get()
