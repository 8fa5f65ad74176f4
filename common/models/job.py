from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from uuid6 import uuid7

# Priorities are folded into a single sorted-set score together with the
# enqueue sequence, so the range has to stay well inside float precision.
MIN_PRIORITY = -100
MAX_PRIORITY = 100

class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

class JobPriority:
    CRITICAL = 10
    HIGH = 8
    NORMAL = 5
    LOW = 3
    BACKGROUND = 1

class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid7()))
    queue_name: str = Field(min_length=1)
    job_type: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    created_at: int
    ready_at: int
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    status: JobStatus = JobStatus.PENDING
    sequence: int = 0
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_error: Optional[str] = None
    result: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def score(self) -> float:
        # Lower score pops first: higher priority, then earlier sequence.
        return float(-self.priority * 10**12 + self.sequence)

class JobCompletion(BaseModel):
    completed: bool
    reason: Optional[str] = None

class JobFailure(BaseModel):
    failed: bool
    dead_lettered: bool = False
    attempts: int = 0
    retry_at: Optional[int] = None
    reason: Optional[str] = None

class QueueStats(BaseModel):
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
