from .pubsub import PubSubService
from .queue import QueueService, QueuedJob
from .retry import retry_delay_ms

__all__ = [
    'PubSubService',
    'QueueService',
    'QueuedJob',
    'retry_delay_ms',
]
