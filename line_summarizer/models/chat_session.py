import secrets
from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from line_summarizer.models.room import RoomKind


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    SUMMARIZING = "summarizing"


class CloseReason(str, Enum):
    MESSAGE_LIMIT = "message_limit"
    TIMEOUT = "timeout"
    MANUAL = "manual"
    ROOM_ARCHIVED = "room_archived"
    EXPIRED = "expired"  # closed by the maintenance sweep


def new_session_id(now: Optional[datetime] = None) -> str:
    """Public logical id: sess_YYYYMMDD_<8 hex>."""
    now = now or datetime.utcnow()
    return f"sess_{now.strftime('%Y%m%d')}_{secrets.token_hex(4)}"


class ChatSession(Document):
    """
    The bounded unit of conversation that gets summarized.

    At most one document per room_id has status=active. message_count is a
    display hint refreshed after each attach; lifecycle decisions always
    count Message documents instead.

    Indexes:
    - Unique session_id: messages reference sessions by this logical id
    - (room_id, status): active-session lookup on every inbound message
    - Unique room_id among active sessions: a second concurrent open for the
      same room fails with DuplicateKeyError, across processes
    - (organization_id, status, start_time): dashboard listing
    """
    session_id: str = Field(default_factory=new_session_id)
    organization_id: str
    room_id: str
    external_room_id: str
    room_name: str
    room_kind: RoomKind

    status: SessionStatus = SessionStatus.ACTIVE
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None

    message_count: int = 0
    summary_id: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "chat_sessions"
        indexes = [
            IndexModel([("session_id", ASCENDING)], unique=True),
            [("room_id", 1), ("status", 1)],
            IndexModel(
                [("room_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"status": SessionStatus.ACTIVE.value},
                name="one_active_session_per_room",
            ),
            [("organization_id", 1), ("status", 1), ("start_time", -1)],
        ]

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    async def transition(self, expected: SessionStatus, new: SessionStatus, **fields: Any) -> bool:
        """
        Compare-and-set the status in the store.

        Returns False when the stored status is no longer `expected` (another
        writer got there first); the in-memory copy is only updated on success.
        """
        now = datetime.utcnow()
        update: Dict[str, Any] = {"status": new.value, "updated_at": now}
        for key, value in fields.items():
            update[key] = value.value if isinstance(value, Enum) else value

        result = await ChatSession.get_motor_collection().update_one(
            {"_id": self.id, "status": expected.value},
            {"$set": update},
        )
        if result.modified_count != 1:
            return False

        self.status = new
        self.updated_at = now
        for key, value in fields.items():
            setattr(self, key, value)
        return True
