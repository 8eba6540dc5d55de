from enum import Enum
from pydantic import BaseModel
from typing import Optional
from datetime import date, datetime


class MessageCreate(BaseModel):
    text: str


class MessageResponse(BaseModel):
    id: str
    group_id: str
    sender_id: str
    text: str
    created_at: datetime

    class Config:
        from_attributes = True


class EntryKind(str, Enum):
    DAY = "day"
    MESSAGE = "message"


class ChatEntry(BaseModel):
    """One line of the rendered chat: a day marker or a message."""
    kind: EntryKind
    day: Optional[date] = None
    message: Optional[MessageResponse] = None


class RelayState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LIVE = "live"
