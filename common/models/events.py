from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from uuid6 import uuid7

class GameEventType(str, Enum):
    GAME_START = "game_start"
    GAME_END = "game_end"
    PLAYER_JOIN = "player_join"
    PLAYER_LEAVE = "player_leave"
    CELL_MARKED = "cell_marked"
    BINGO_ACHIEVED = "bingo_achieved"
    BOARD_UPDATE = "board_update"
    CHAT_MESSAGE = "chat_message"
    SYSTEM_ANNOUNCEMENT = "system_announcement"

class ChatMessageType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    ACHIEVEMENT = "achievement"

class GameEventDraft(BaseModel):
    """What a caller hands to the publisher; id and timestamp are assigned on publish."""
    type: GameEventType
    game_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    board_id: Optional[str] = None
    session_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

class GameEvent(GameEventDraft):
    id: str = Field(default_factory=lambda: str(uuid7()))
    timestamp: int

class ChatMessageDraft(BaseModel):
    game_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    username: str
    message: str = Field(min_length=1)
    type: ChatMessageType = ChatMessageType.USER

class ChatMessage(ChatMessageDraft):
    id: str = Field(default_factory=lambda: f"msg-{uuid7()}")
    timestamp: int

class ChannelStats(BaseModel):
    total_events: int
    total_messages: int
    oldest_event_at: Optional[int] = None
    newest_event_at: Optional[int] = None
