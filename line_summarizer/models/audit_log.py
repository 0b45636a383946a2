from beanie import Document
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class AuditChanges(BaseModel):
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None


class AuditLog(Document):
    """
    Append-only record of an administrative action.

    action is "<resource>:<verb>" (session:close, member:role_change ...);
    category is the resource part and drives dashboard filtering.
    """
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None

    action: str
    category: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    changes: Optional[AuditChanges] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None

    status: AuditStatus = AuditStatus.SUCCESS
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("organization_id", 1), ("created_at", -1)],
            [("organization_id", 1), ("action", 1), ("created_at", -1)],
            [("user_id", 1), ("created_at", -1)],
            [("resource_type", 1), ("resource_id", 1)],
        ]
