from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"

class PresenceEventType(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    UPDATE = "update"

class ParticipantInfo(BaseModel):
    display_name: str
    avatar: Optional[str] = None

class RoleInfo(BaseModel):
    role: str = "player"
    is_host: bool = False
    extra: Dict[str, Any] = Field(default_factory=dict)

class PresenceEntry(BaseModel):
    board_id: str
    participant_id: str
    display_name: str
    avatar: Optional[str] = None
    role: str = "player"
    is_host: bool = False
    status: PresenceStatus = PresenceStatus.ONLINE
    metadata: Dict[str, Any] = Field(default_factory=dict)
    joined_at: int
    last_seen_at: int
    ttl_ms: int

class PresenceEvent(BaseModel):
    type: PresenceEventType
    board_id: str
    participant_id: str
    presence: Optional[PresenceEntry] = None
    timestamp: int

class PresenceLeave(BaseModel):
    left: bool

class PresenceUpdate(BaseModel):
    updated: bool
    presence: Optional[PresenceEntry] = None
