"""
Attribute-based policies.

Each policy is a plain function registered under an action name. It receives
a PolicyContext (caller, organization, role, resource, extra attributes) and
returns a PolicyDecision with a human-readable reason, which is what the
dashboard shows when access is denied.

Usage:
    decision = evaluate_policy("session:close", PolicyContext(...))
    if not decision.allowed:
        raise ForbiddenError(decision.reason)
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from line_summarizer.core.oauth_validator import CallerIdentity
from line_summarizer.core.permissions import Role
from line_summarizer.models.organization import Organization


@dataclass
class PolicyContext:
    caller: CallerIdentity
    organization: Organization
    role: Optional[Role]
    resource: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def organization_id(self) -> str:
        return str(self.organization.id)


@dataclass
class PolicyDecision:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


Policy = Callable[[PolicyContext], PolicyDecision]

POLICIES: Dict[str, Policy] = {}

CROSS_TENANT_REASON = "Resource belongs to a different organization"


def policy(name: str) -> Callable[[Policy], Policy]:
    def register(func: Policy) -> Policy:
        POLICIES[name] = func
        return func
    return register


def allow(reason: str = "Allowed") -> PolicyDecision:
    return PolicyDecision(True, reason)


def deny(reason: str) -> PolicyDecision:
    return PolicyDecision(False, reason)


def _same_organization(ctx: PolicyContext) -> PolicyDecision:
    resource_org = getattr(ctx.resource, "organization_id", None)
    if ctx.resource is not None and resource_org != ctx.organization_id:
        return deny(CROSS_TENANT_REASON)
    return allow("Resource belongs to caller's organization")


def _is_manager(ctx: PolicyContext) -> bool:
    return ctx.role in (Role.OWNER, Role.ADMIN)


@policy("organization:status")
def organization_status(ctx: PolicyContext) -> PolicyDecision:
    operational, reason = ctx.organization.operational_status()
    return allow(reason) if operational else deny(reason)


@policy("resource:access")
def resource_access(ctx: PolicyContext) -> PolicyDecision:
    return _same_organization(ctx)


@policy("session:close")
def session_close(ctx: PolicyContext) -> PolicyDecision:
    decision = _same_organization(ctx)
    if not decision:
        return decision
    if not _is_manager(ctx):
        return deny("Only organization owners and admins can close sessions")
    return allow("Session can be closed")


@policy("summary:generate")
def summary_generate(ctx: PolicyContext) -> PolicyDecision:
    decision = _same_organization(ctx)
    if not decision:
        return decision

    allowed, reason = ctx.organization.summary_allowance()
    if not allowed:
        return deny(reason)

    status = getattr(ctx.resource, "status", None)
    if status is not None and status != "closed":
        return deny("Summaries can only be generated for closed sessions")
    return allow("Summary generation allowed")


@policy("summary:edit")
def summary_edit(ctx: PolicyContext) -> PolicyDecision:
    return _same_organization(ctx)


@policy("room:archive")
def room_archive(ctx: PolicyContext) -> PolicyDecision:
    decision = _same_organization(ctx)
    if not decision:
        return decision
    if not _is_manager(ctx):
        return deny("Only organization owners and admins can archive rooms")
    return allow("Room can be archived")


@policy("member:invite")
def member_invite(ctx: PolicyContext) -> PolicyDecision:
    if ctx.organization.user_limit_reached():
        return deny(
            f"User limit reached ({ctx.organization.limits.max_users} users on "
            f"{ctx.organization.plan.value} plan)"
        )
    return allow("Organization can accept new members")


@policy("member:manage")
def member_manage(ctx: PolicyContext) -> PolicyDecision:
    """
    Role changes, removal and suspension of another member.

    extra:
        target_role: current Role of the member being managed
        new_role:    requested Role (role changes only)
    """
    decision = _same_organization(ctx)
    if not decision:
        return decision

    target_user = getattr(ctx.resource, "user_id", None)
    if target_user is not None and target_user == ctx.caller.user_id:
        return deny("You cannot change your own membership")

    target_role = ctx.extra.get("target_role")
    new_role = ctx.extra.get("new_role")
    if ctx.role != Role.OWNER:
        if target_role == Role.OWNER:
            return deny("Only owners can manage other owners")
        if new_role == Role.OWNER:
            return deny("Only owners can grant the owner role")
    return allow("Member can be managed")


@policy("invite_code:create")
def invite_code_create(ctx: PolicyContext) -> PolicyDecision:
    if not _is_manager(ctx):
        return deny("Only organization owners and admins can create invite codes")
    if ctx.extra.get("default_role") == Role.OWNER:
        return deny("Invite codes cannot grant the owner role")
    return allow("Invite code can be created")


def evaluate_policy(name: str, ctx: PolicyContext) -> PolicyDecision:
    func = POLICIES.get(name)
    if func is None:
        return deny(f"Unknown policy: {name}")
    return func(ctx)
