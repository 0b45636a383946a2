"""
Permission/Tenancy Guard.

Every dashboard operation goes through here before it touches domain logic:

1. Organization status (suspended/cancelled/expired tenants are closed)
2. RBAC: the caller's active membership role must grant the permission
3. ABAC: an action policy (or the default tenancy policy when a resource is
   given) must allow the concrete resource

Platform superadmins bypass all three.

Usage in routes:
    ctx: OrgContext = Depends(require_permission(Permission.SESSIONS_VIEW))
    ...
    await guard.enforce(ctx, Permission.SESSIONS_CLOSE, resource=session,
                        audit_action="session:close", request=request)

Membership lookups are cached in Redis (membership:{org_id}:{user_id}) and
invalidated whenever a membership changes.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Depends, Request

from line_summarizer.config import settings
from line_summarizer.core import metrics
from line_summarizer.core.cache import cache, CacheBackend
from line_summarizer.core.exceptions import ForbiddenError, TenantNotFoundError
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.oauth_validator import CallerIdentity, validate_access_token
from line_summarizer.core.permissions import Permission, Role, role_has_permission
from line_summarizer.core.policies import (
    CROSS_TENANT_REASON,
    PolicyContext,
    evaluate_policy,
)
from line_summarizer.models.organization import Organization
from line_summarizer.models.organization_member import MemberStatus, OrganizationMember
from line_summarizer.services.audit_service import AuditRecorder, get_audit_recorder

logger = get_logger(__name__)

NO_MEMBERSHIP = "none"

# Action policies applied automatically for these permissions
DEFAULT_POLICIES: Dict[Permission, str] = {
    Permission.SESSIONS_CLOSE: "session:close",
    Permission.SUMMARIES_GENERATE: "summary:generate",
    Permission.SUMMARIES_EDIT: "summary:edit",
    Permission.SUMMARIES_DELETE: "summary:edit",
    Permission.GROUPS_ARCHIVE: "room:archive",
    Permission.INVITE_CODES_CREATE: "invite_code:create",
    Permission.MEMBERS_ROLES: "member:manage",
    Permission.MEMBERS_REMOVE: "member:manage",
    Permission.MEMBERS_INVITE: "member:invite",
}


@dataclass
class AuthorizationDecision:
    """Outcome of a guard check."""
    allowed: bool
    reason: str
    source: str = "rbac"  # "superadmin", "organization", "rbac", "abac"

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class OrgContext:
    """Caller resolved against one organization."""
    caller: CallerIdentity
    organization: Organization
    role: Optional[Role]

    @property
    def organization_id(self) -> str:
        return str(self.organization.id)

    @property
    def is_superadmin(self) -> bool:
        return self.caller.is_superadmin


def parse_object_id(value: str) -> Optional[PydanticObjectId]:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        return None


class PermissionGuard:
    """RBAC + ABAC authorization with cached membership resolution."""

    def __init__(
        self,
        audit: Optional[AuditRecorder] = None,
        cache_backend: Optional[CacheBackend] = None,
    ):
        self.audit = audit or get_audit_recorder()
        self.cache = cache_backend or cache

    @staticmethod
    def _cache_key(organization_id: str, user_id: str) -> str:
        return f"membership:{organization_id}:{user_id}"

    async def load_organization(self, organization_id: str) -> Organization:
        object_id = parse_object_id(organization_id)
        organization = await Organization.get(object_id) if object_id else None
        if organization is None:
            raise TenantNotFoundError(f"Organization {organization_id} not found")
        return organization

    async def resolve_role(self, organization_id: str, user_id: str) -> Optional[Role]:
        """Active membership role of the user, or None."""
        key = self._cache_key(organization_id, user_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return None if cached == NO_MEMBERSHIP else Role(cached)

        member = await OrganizationMember.find_one(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
            OrganizationMember.status == MemberStatus.ACTIVE,
        )
        role = member.role if member else None
        await self.cache.set(
            key,
            role.value if role else NO_MEMBERSHIP,
            ttl=settings.MEMBERSHIP_CACHE_TTL,
        )
        return role

    async def invalidate_membership(self, organization_id: str, user_id: str) -> None:
        await self.cache.delete(self._cache_key(organization_id, user_id))

    def decide(
        self,
        caller: CallerIdentity,
        organization: Organization,
        role: Optional[Role],
        permission: Permission,
        resource: Any = None,
        policy: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationDecision:
        """Pure decision given an already-resolved role."""
        if caller.is_superadmin:
            return AuthorizationDecision(True, "Platform superadmin", source="superadmin")

        policy_ctx = PolicyContext(
            caller=caller,
            organization=organization,
            role=role,
            resource=resource,
            extra=context or {},
        )

        status = evaluate_policy("organization:status", policy_ctx)
        if not status:
            return AuthorizationDecision(False, status.reason, source="organization")

        if role is None:
            return AuthorizationDecision(
                False, "Not a member of this organization", source="rbac"
            )

        if not role_has_permission(role, permission):
            return AuthorizationDecision(
                False,
                f"Role '{role.value}' lacks permission '{permission.value}'",
                source="rbac",
            )

        policy_name = policy or DEFAULT_POLICIES.get(permission)
        if policy_name is None and resource is not None:
            policy_name = "resource:access"
        if policy_name is not None:
            decision = evaluate_policy(policy_name, policy_ctx)
            if not decision:
                return AuthorizationDecision(False, decision.reason, source="abac")

        return AuthorizationDecision(True, "Allowed", source="abac" if policy_name else "rbac")

    def check(
        self,
        ctx: OrgContext,
        permission: Permission,
        resource: Any = None,
        policy: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationDecision:
        decision = self.decide(
            ctx.caller, ctx.organization, ctx.role, permission, resource, policy, context
        )
        self._log_decision(ctx.caller, ctx.organization, permission, resource, decision)
        return decision

    async def enforce(
        self,
        ctx: OrgContext,
        permission: Permission,
        resource: Any = None,
        policy: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        audit_action: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> AuthorizationDecision:
        """
        Like check(), but raises ForbiddenError on denial.

        With audit_action set, the denied attempt is recorded as a failure.
        """
        decision = self.check(ctx, permission, resource, policy, context)
        if decision:
            return decision

        if audit_action:
            await self.audit.log_failure(
                audit_action,
                decision.reason,
                organization_id=ctx.organization_id,
                actor=ctx.caller,
                resource_type=type(resource).__name__ if resource is not None else None,
                resource_id=str(resource.id) if getattr(resource, "id", None) else None,
                request=request,
            )
        raise ForbiddenError(decision.reason)

    async def resolve_context(
        self,
        caller: CallerIdentity,
        organization_id: str,
        permission: Permission,
    ) -> OrgContext:
        """Load the organization, resolve membership and check RBAC for the permission."""
        organization = await self.load_organization(organization_id)
        role = None
        if not caller.is_superadmin:
            role = await self.resolve_role(organization_id, caller.user_id)
        ctx = OrgContext(caller=caller, organization=organization, role=role)

        decision = self.check(ctx, permission)
        if not decision:
            raise ForbiddenError(decision.reason)
        return ctx

    def _log_decision(
        self,
        caller: CallerIdentity,
        organization: Organization,
        permission: Permission,
        resource: Any,
        decision: AuthorizationDecision,
    ) -> None:
        if decision.allowed:
            logger.debug(
                "authorization_allowed",
                user_id=caller.user_id,
                org_id=str(organization.id),
                permission=permission.value,
                source=decision.source,
            )
            return

        metrics.authorization_denials_total.labels(permission=permission.value).inc()
        cross_tenant = decision.reason == CROSS_TENANT_REASON or (
            decision.source == "rbac" and decision.reason.startswith("Not a member")
        )
        log = logger.error if cross_tenant else logger.warning
        log(
            "authorization_denied",
            user_id=caller.user_id,
            org_id=str(organization.id),
            permission=permission.value,
            resource_org_id=getattr(resource, "organization_id", None),
            reason=decision.reason,
            source=decision.source,
            security_violation=cross_tenant,
        )


_permission_guard: Optional[PermissionGuard] = None


def get_permission_guard() -> PermissionGuard:
    global _permission_guard
    if _permission_guard is None:
        _permission_guard = PermissionGuard()
    return _permission_guard


def require_permission(permission: Permission):
    """
    Route dependency resolving OrgContext for the {org_id} path parameter.

    Usage:
        @router.get("/organizations/{org_id}/sessions")
        async def list_sessions(ctx: OrgContext = Depends(require_permission(Permission.SESSIONS_LIST))):
            ...

    Raises:
        UnauthorizedError: 401 without a valid token
        TenantNotFoundError: 404 for an unknown organization
        ForbiddenError: 403 with the denial reason
    """
    async def permission_checker(
        org_id: str,
        caller: CallerIdentity = Depends(validate_access_token),
        guard: PermissionGuard = Depends(get_permission_guard),
    ) -> OrgContext:
        return await guard.resolve_context(caller, org_id, permission)

    return permission_checker
