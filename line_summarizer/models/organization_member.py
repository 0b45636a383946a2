from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import Optional

from line_summarizer.core.permissions import Role


class MemberStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REMOVED = "removed"


class OrganizationMember(Document):
    """
    Membership of a user in an organization.

    Indexes:
    - Unique (organization_id, user_id): one membership row per pair; removed
      members are reactivated instead of re-inserted
    - (user_id, status): "which organizations am I in"
    """
    organization_id: str
    user_id: str
    role: Role = Role.MEMBER
    status: MemberStatus = MemberStatus.ACTIVE

    email: Optional[str] = None
    display_name: Optional[str] = None

    invited_by: Optional[str] = None
    joined_at: datetime = Field(default_factory=datetime.utcnow)
    removed_at: Optional[datetime] = None
    removed_by: Optional[str] = None
    suspended_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "organization_members"
        indexes = [
            IndexModel(
                [("organization_id", ASCENDING), ("user_id", ASCENDING)],
                unique=True,
            ),
            [("user_id", 1), ("status", 1)],
            [("organization_id", 1), ("role", 1), ("status", 1)],
        ]

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE
