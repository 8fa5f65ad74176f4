from .result import ServiceResult, ServiceErrorKind
from .lock import LockResult, LockRelease, LockExtension, LockStatus
from .presence import (
    PresenceStatus, PresenceEventType, ParticipantInfo, RoleInfo,
    PresenceEntry, PresenceEvent, PresenceLeave, PresenceUpdate
)
from .events import (
    GameEventType, ChatMessageType, GameEventDraft, GameEvent,
    ChatMessageDraft, ChatMessage, ChannelStats
)
from .job import (
    Job, JobStatus, JobPriority, JobCompletion, JobFailure, QueueStats,
    MIN_PRIORITY, MAX_PRIORITY
)
