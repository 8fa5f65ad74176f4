from typing import Optional
from pydantic import BaseModel

class LockResult(BaseModel):
    acquired: bool
    lock_id: str
    holder: Optional[str] = None
    expires_at: Optional[int] = None
    attempts: int = 1

class LockRelease(BaseModel):
    released: bool
    reason: Optional[str] = None

class LockExtension(BaseModel):
    extended: bool
    new_expires_at: Optional[int] = None
    reason: Optional[str] = None

class LockStatus(BaseModel):
    exists: bool
    holder: Optional[str] = None
    expires_at: Optional[int] = None
    time_remaining_ms: Optional[int] = None
