class CoordinationError(Exception):
    """Base error for the coordination layer"""
    def __init__(self, message: str = None, source: Exception = None):
        self.message = message
        self.source = source
        super().__init__(self.__str__())

    def __str__(self):
        msg = self.message or self.__class__.__name__
        if self.source:
            return f"{msg}: {self.source}"
        return msg

class StoreError(CoordinationError):
    pass

class LockError(CoordinationError):
    pass

class LockNotAcquiredError(LockError):
    def __init__(self, lock_id: str):
        self.lock_id = lock_id
        super().__init__(f"Could not acquire lock {lock_id}")

class ConfigError(CoordinationError):
    pass
