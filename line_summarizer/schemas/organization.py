from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional
import bleach

from line_summarizer.core.permissions import Role
from line_summarizer.models.audit_log import AuditLog
from line_summarizer.models.invite_code import InviteCode
from line_summarizer.models.organization import (
    Organization,
    OrganizationPreferences,
    OrganizationUsage,
    PlanLimits,
)
from line_summarizer.models.organization_member import OrganizationMember


class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=3, max_length=60, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

    @field_validator("name")
    @classmethod
    def sanitize_name(cls, v: str) -> str:
        return bleach.clean(v, tags=[], strip=True).strip()


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    status: str
    plan: str
    plan_expires_at: Optional[datetime] = None
    limits: PlanLimits
    usage: OrganizationUsage
    preferences: OrganizationPreferences
    # Only present for callers allowed to manage settings
    activation_code: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, organization: Organization, include_activation_code: bool = False) -> "OrganizationResponse":
        return cls(
            id=str(organization.id),
            name=organization.name,
            slug=organization.slug,
            status=organization.status.value,
            plan=organization.plan.value,
            plan_expires_at=organization.plan_expires_at,
            limits=organization.limits,
            usage=organization.usage,
            preferences=organization.preferences,
            activation_code=organization.activation_code if include_activation_code else None,
            created_at=organization.created_at,
        )


class MemberResponse(BaseModel):
    user_id: str
    role: str
    status: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    invited_by: Optional[str] = None
    joined_at: datetime

    @classmethod
    def from_model(cls, member: OrganizationMember) -> "MemberResponse":
        return cls(
            user_id=member.user_id,
            role=member.role.value,
            status=member.status.value,
            email=member.email,
            display_name=member.display_name,
            invited_by=member.invited_by,
            joined_at=member.joined_at,
        )


class MemberListResponse(BaseModel):
    members: List[MemberResponse]
    total: int


class RoleUpdate(BaseModel):
    role: Role


class InviteCodeCreate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    default_role: Role = Role.MEMBER
    max_uses: Optional[int] = Field(default=None, ge=1, le=10000)
    expires_at: Optional[datetime] = None


class InviteCodeResponse(BaseModel):
    id: str
    code: str
    name: Optional[str] = None
    default_role: str
    status: str
    max_uses: Optional[int] = None
    current_uses: int
    expires_at: Optional[datetime] = None
    created_by: str
    created_at: datetime

    @classmethod
    def from_model(cls, invite: InviteCode) -> "InviteCodeResponse":
        return cls(
            id=str(invite.id),
            code=invite.code,
            name=invite.name,
            default_role=invite.default_role.value,
            status=invite.status.value,
            max_uses=invite.max_uses,
            current_uses=invite.current_uses,
            expires_at=invite.expires_at,
            created_by=invite.created_by,
            created_at=invite.created_at,
        )


class InviteCodeListResponse(BaseModel):
    invite_codes: List[InviteCodeResponse]


class JoinRequest(BaseModel):
    code: str = Field(..., min_length=9, max_length=9, description="Invite code, XXXX-XXXX")


class JoinResponse(BaseModel):
    organization: OrganizationResponse
    member: MemberResponse


class AuditLogResponse(BaseModel):
    id: str
    action: str
    category: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any]
    changes: Optional[Dict[str, Any]] = None
    status: str
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: AuditLog) -> "AuditLogResponse":
        return cls(
            id=str(entry.id),
            action=entry.action,
            category=entry.category,
            user_id=entry.user_id,
            user_email=entry.user_email,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            description=entry.description,
            metadata=entry.metadata,
            changes=entry.changes.model_dump() if entry.changes else None,
            status=entry.status.value,
            error_message=entry.error_message,
            ip_address=entry.ip_address,
            request_id=entry.request_id,
            created_at=entry.created_at,
        )


class AuditLogListResponse(BaseModel):
    logs: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    has_more: bool
