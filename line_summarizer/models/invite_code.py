import secrets
from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import Optional

from line_summarizer.core.permissions import Role

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I


def random_code_block(length: int = 4) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def new_invite_code() -> str:
    return f"{random_code_block()}-{random_code_block()}"


class InviteCodeStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    EXPIRED = "expired"


class InviteCode(Document):
    """Shareable code (XXXX-XXXX) that lets a user join an organization."""
    organization_id: str
    code: str = Field(default_factory=new_invite_code)
    name: Optional[str] = None
    default_role: Role = Role.MEMBER
    status: InviteCodeStatus = InviteCodeStatus.ACTIVE

    max_uses: Optional[int] = Field(default=None, ge=1)
    current_uses: int = 0
    expires_at: Optional[datetime] = None

    created_by: str
    disabled_by: Optional[str] = None
    disabled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "invite_codes"
        indexes = [
            IndexModel([("code", ASCENDING)], unique=True),
            [("organization_id", 1), ("status", 1)],
        ]

    def redeemable(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        if self.status != InviteCodeStatus.ACTIVE:
            return False
        if self.expires_at and self.expires_at <= now:
            return False
        if self.max_uses is not None and self.current_uses >= self.max_uses:
            return False
        return True
