from .lock import LockService, LockHandle
from .presence import PresenceService, PresenceHandle

__all__ = [
    'LockService',
    'LockHandle',
    'PresenceService',
    'PresenceHandle',
]
