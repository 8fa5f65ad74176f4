from .error import (
    CoordinationError, StoreError, LockError, LockNotAcquiredError, ConfigError
)
