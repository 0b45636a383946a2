from beanie import Document
from pydantic import Field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class MessageDirection(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    STICKER = "sticker"
    LOCATION = "location"
    OTHER = "other"


class Message(Document):
    """
    MongoDB document for one unit of conversation. Written once, never updated.

    Messages reference their session by the logical session_id string, not by
    the session document's ObjectId, so a session record can be rewritten
    without orphaning its messages. count(Message where session_id = X) is the
    authoritative session size.

    Indexes:
    - (session_id, timestamp): transcript order and the authoritative count
    - (organization_id, room_id, timestamp): room history in the dashboard
    - external_message_id: redelivery deduplication
    """
    organization_id: str
    room_id: str
    session_id: str

    direction: MessageDirection = MessageDirection.USER
    message_type: MessageType = MessageType.TEXT
    content: str = Field(..., max_length=10000)
    # Raw LINE message object for non-text content (sticker ids, file names...)
    payload: Dict[str, Any] = Field(default_factory=dict)

    external_message_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "messages"
        indexes = [
            [("session_id", 1), ("timestamp", 1)],
            [("organization_id", 1), ("room_id", 1), ("timestamp", -1)],
            "external_message_id",
        ]

    class Config:
        json_schema_extra = {
            "example": {
                "organization_id": "665f1c2a9b1e8a0012345678",
                "room_id": "665f1c2a9b1e8a0012345679",
                "session_id": "sess_20240611_9f86d081",
                "direction": "user",
                "message_type": "text",
                "content": "My order hasn't arrived yet",
                "external_message_id": "468789577898262530",
                "sender_id": "U4af4980629...",
                "sender_name": "Somchai",
            }
        }
