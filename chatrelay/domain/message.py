"""
Inbound message, media and queue schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# Platform message types that never need an answer
NOTIFICATION_TYPES = {"notification", "e2e_notification", "notification_template", "call_log", "gp2"}


class MessageCategory(str, Enum):
    """Routing category assigned by the dispatcher."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    UNSUPPORTED = "unsupported"


class MediaPayload(BaseModel):
    """Downloaded media attached to a message."""
    data: bytes
    mimetype: str
    filename: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class ChatInfo(BaseModel):
    """Chat metadata resolved for an inbound event."""
    id: str
    name: Optional[str] = None
    is_group: bool = False


class QuotedMessage(BaseModel):
    """The message an inbound event replies to."""
    id: Optional[str] = None
    from_: Optional[str] = None
    author: Optional[str] = None
    from_me: bool = False
    body: str = ""


class GroupNotification(BaseModel):
    """Group membership change delivered by the platform."""
    chat: ChatInfo
    recipient_ids: List[str] = Field(default_factory=list)
    type: str = "add"


class JobHandle(BaseModel):
    """Handle returned by a media queue submission."""
    id: str
    job_type: str
    transaction_id: str


class QueueResult(BaseModel):
    """Completion payload delivered to a media queue's result callback."""
    response: str
    sender_id: str
    chat_id: str
    message_id: Optional[str] = None
    transaction_id: str
    is_error: bool = False
    error_type: Optional[str] = None
    job_type: Optional[str] = None


class QueueJobRecord(BaseModel):
    """Bookkeeping for one submitted media job."""
    id: str
    job_type: str
    transaction_id: str
    state: str = "waiting"  # waiting, active, completed, failed, cancelled
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict, exclude=True)
