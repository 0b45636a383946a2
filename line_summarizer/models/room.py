from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import Optional


class RoomKind(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


class RoomStatistics(BaseModel):
    """Display counters. Never used as input to a lifecycle decision."""
    total_messages: int = 0
    total_sessions: int = 0
    total_summaries: int = 0
    last_activity_at: Optional[datetime] = None


class Room(Document):
    """
    One LINE conversation channel (direct chat, multi-user room or group).

    external_room_id is the LINE groupId, roomId or userId. A room is never
    deleted; archiving flips is_active and force-closes its open session.

    Indexes:
    - Unique (organization_id, external_room_id): makes concurrent first
      contact from two deliveries collapse into one Room
    - external_room_id alone: tenant routing of inbound events
    """
    organization_id: str
    external_room_id: str = Field(..., min_length=1)
    name: str
    kind: RoomKind
    # True while the name is a generated placeholder and a profile lookup may improve it
    name_is_fallback: bool = False

    is_active: bool = True
    archived_at: Optional[datetime] = None

    statistics: RoomStatistics = Field(default_factory=RoomStatistics)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "rooms"
        indexes = [
            IndexModel(
                [("organization_id", ASCENDING), ("external_room_id", ASCENDING)],
                unique=True,
            ),
            "external_room_id",
            [("organization_id", 1), ("is_active", 1), ("updated_at", -1)],
        ]
