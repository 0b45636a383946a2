from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


class OrganizationStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class PlanLimits(BaseModel):
    """Quota ceilings. None means unlimited."""
    max_users: int
    max_line_accounts: int
    max_groups: int
    max_messages_per_month: Optional[int]
    summaries_per_month: Optional[int]
    ai_summaries_enabled: bool


PLAN_LIMITS: Dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(
        max_users=5, max_line_accounts=1, max_groups=10,
        max_messages_per_month=1000, summaries_per_month=50,
        ai_summaries_enabled=False,
    ),
    Plan.STARTER: PlanLimits(
        max_users=10, max_line_accounts=2, max_groups=50,
        max_messages_per_month=10000, summaries_per_month=500,
        ai_summaries_enabled=True,
    ),
    Plan.PROFESSIONAL: PlanLimits(
        max_users=50, max_line_accounts=10, max_groups=500,
        max_messages_per_month=100000, summaries_per_month=5000,
        ai_summaries_enabled=True,
    ),
    Plan.ENTERPRISE: PlanLimits(
        max_users=1000, max_line_accounts=100, max_groups=10000,
        max_messages_per_month=None, summaries_per_month=None,
        ai_summaries_enabled=True,
    ),
}


class OrganizationUsage(BaseModel):
    current_users: int = 0
    current_groups: int = 0
    messages_this_month: int = 0
    summaries_this_month: int = 0
    last_usage_reset: datetime = Field(default_factory=datetime.utcnow)


class OrganizationPreferences(BaseModel):
    """Per-tenant overrides. Unset session thresholds fall back to global settings."""
    timezone: str = "Asia/Bangkok"
    language: str = "th"
    session_max_messages: Optional[int] = Field(default=None, ge=1)
    session_timeout_hours: Optional[float] = Field(default=None, gt=0)


class Organization(Document):
    """
    Tenant boundary.

    Every Room, ChatSession, Message, Summary and OrganizationMember carries
    the string form of this document's id in organization_id.
    """
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=60)
    status: OrganizationStatus = OrganizationStatus.ACTIVE

    plan: Plan = Plan.FREE
    plan_expires_at: Optional[datetime] = None
    limits: PlanLimits = Field(default_factory=lambda: PLAN_LIMITS[Plan.FREE].model_copy())
    usage: OrganizationUsage = Field(default_factory=OrganizationUsage)
    preferences: OrganizationPreferences = Field(default_factory=OrganizationPreferences)

    # Binds LINE group chats to this tenant (ORG-XXXX-XXXX)
    activation_code: Optional[str] = None

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "organizations"
        indexes = [
            IndexModel([("slug", ASCENDING)], unique=True),
            "activation_code",
            "status",
        ]

    def apply_plan(self, plan: Plan) -> None:
        self.plan = plan
        self.limits = PLAN_LIMITS[plan].model_copy()

    def operational_status(self, now: Optional[datetime] = None) -> Tuple[bool, str]:
        """Whether the tenant may be used at all, with the reason when not."""
        now = now or datetime.utcnow()
        if self.status == OrganizationStatus.SUSPENDED:
            return False, "Organization is suspended"
        if self.status == OrganizationStatus.CANCELLED:
            return False, "Organization subscription is cancelled"
        if self.plan_expires_at and self.plan_expires_at < now:
            return False, "Organization plan has expired"
        return True, "Organization is active"

    def message_quota_exhausted(self) -> bool:
        limit = self.limits.max_messages_per_month
        return limit is not None and self.usage.messages_this_month >= limit

    def summary_allowance(self) -> Tuple[bool, str]:
        """Whether another AI summary may be generated this month."""
        if not self.limits.ai_summaries_enabled:
            return False, "AI summaries are not available on the current plan"
        limit = self.limits.summaries_per_month
        if limit is not None and self.usage.summaries_this_month >= limit:
            return False, f"Monthly summary limit reached ({limit})"
        return True, "Summary generation allowed"

    def user_limit_reached(self) -> bool:
        return self.usage.current_users >= self.limits.max_users
