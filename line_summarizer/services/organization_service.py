"""
OrganizationService - tenants, memberships and invite codes.

Membership invariants:
- One OrganizationMember row per (organization, user); removed members are
  reactivated instead of re-inserted
- The last active owner can be neither demoted, removed nor suspended
- Every membership change invalidates the guard's cached role

All mutating operations take an OrgContext already checked for the RBAC
permission by the route, apply the action's ABAC policy through the
PermissionGuard and write an audit entry.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import Request
from pymongo.errors import DuplicateKeyError

from line_summarizer.core.authorization import OrgContext, PermissionGuard, get_permission_guard, parse_object_id
from line_summarizer.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.oauth_validator import CallerIdentity
from line_summarizer.core.permissions import Permission, Role
from line_summarizer.core.policies import PolicyContext, evaluate_policy
from line_summarizer.db.mongodb import storage_operation
from line_summarizer.models.invite_code import InviteCode, InviteCodeStatus, random_code_block
from line_summarizer.models.organization import Organization, OrganizationStatus
from line_summarizer.models.organization_member import MemberStatus, OrganizationMember
from line_summarizer.services.audit_service import AuditRecorder, get_audit_recorder

logger = get_logger(__name__)

ACTIVATION_CODE_ATTEMPTS = 10


def new_activation_code() -> str:
    return f"ORG-{random_code_block()}-{random_code_block()}"


class OrganizationService:

    def __init__(
        self,
        guard: Optional[PermissionGuard] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.guard = guard or get_permission_guard()
        self.audit = audit or get_audit_recorder()

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def _unique_activation_code(self) -> str:
        for _ in range(ACTIVATION_CODE_ATTEMPTS):
            code = new_activation_code()
            if await Organization.find_one(Organization.activation_code == code) is None:
                return code
        raise ConflictError("Could not generate a unique activation code")

    async def create_organization(
        self,
        caller: CallerIdentity,
        name: str,
        slug: str,
        request: Optional[Request] = None,
    ) -> Organization:
        """Create a tenant on the free plan with the caller as its owner."""
        organization = Organization(
            name=name,
            slug=slug,
            status=OrganizationStatus.ACTIVE,
            activation_code=await self._unique_activation_code(),
            created_by=caller.user_id,
        )
        organization.usage.current_users = 1

        with storage_operation("insert", "organizations", slug=slug):
            try:
                await organization.insert()
            except DuplicateKeyError:
                raise ConflictError(f"Organization slug '{slug}' is already taken")

        owner = OrganizationMember(
            organization_id=str(organization.id),
            user_id=caller.user_id,
            role=Role.OWNER,
            email=caller.email,
            display_name=caller.name,
        )
        with storage_operation("insert", "organization_members", org_id=str(organization.id)):
            await owner.insert()
        await self.guard.invalidate_membership(str(organization.id), caller.user_id)

        logger.info(
            "organization_created",
            org_id=str(organization.id),
            slug=slug,
            owner_id=caller.user_id,
        )
        await self.audit.log_success(
            "organization:create",
            organization_id=str(organization.id),
            actor=caller,
            resource_type="Organization",
            resource_id=str(organization.id),
            description=f"Created organization {name}",
            after={"name": name, "slug": slug, "plan": organization.plan.value},
            request=request,
        )
        return organization

    async def get_by_slug(self, slug: str) -> Optional[Organization]:
        return await Organization.find_one(Organization.slug == slug)

    async def get_by_activation_code(self, code: str) -> Optional[Organization]:
        return await Organization.find_one(Organization.activation_code == code)

    async def regenerate_activation_code(
        self,
        ctx: OrgContext,
        request: Optional[Request] = None,
    ) -> Organization:
        organization = ctx.organization
        old_code = organization.activation_code
        organization.activation_code = await self._unique_activation_code()
        organization.updated_at = datetime.utcnow()
        with storage_operation("update", "organizations", org_id=ctx.organization_id):
            await organization.save()

        logger.info("activation_code_regenerated", org_id=ctx.organization_id, user_id=ctx.caller.user_id)
        await self.audit.log_success(
            "organization:activation_code",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="Organization",
            resource_id=ctx.organization_id,
            description="Regenerated activation code",
            before={"activation_code": old_code},
            after={"activation_code": organization.activation_code},
            request=request,
        )
        return organization

    async def reset_monthly_usage(self, now: Optional[datetime] = None) -> int:
        """Zero message and summary counters of organizations last reset in an earlier month."""
        now = now or datetime.utcnow()
        month_start = datetime(now.year, now.month, 1)
        with storage_operation("update", "organizations"):
            result = await Organization.find(
                {"usage.last_usage_reset": {"$lt": month_start}}
            ).update({
                "$set": {
                    "usage.messages_this_month": 0,
                    "usage.summaries_this_month": 0,
                    "usage.last_usage_reset": now,
                }
            })
        reset = getattr(result, "modified_count", 0) or 0
        if reset:
            logger.info("monthly_usage_reset", organizations=reset)
        return reset

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def list_members(
        self,
        organization_id: str,
        status: Optional[MemberStatus] = None,
    ) -> List[OrganizationMember]:
        query = {"organization_id": organization_id}
        if status is not None:
            query["status"] = status.value
        else:
            query["status"] = {"$ne": MemberStatus.REMOVED.value}
        return await OrganizationMember.find(query).sort(+OrganizationMember.joined_at).to_list()

    async def get_member(self, organization_id: str, user_id: str) -> OrganizationMember:
        member = await OrganizationMember.find_one(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
        )
        if member is None or member.status == MemberStatus.REMOVED:
            raise NotFoundError(f"Member {user_id} not found")
        return member

    async def _count_active_owners(self, organization_id: str) -> int:
        return await OrganizationMember.find(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.role == Role.OWNER,
            OrganizationMember.status == MemberStatus.ACTIVE,
        ).count()

    async def _ensure_not_last_owner(self, member: OrganizationMember, action: str) -> None:
        if member.role != Role.OWNER or member.status != MemberStatus.ACTIVE:
            return
        if await self._count_active_owners(member.organization_id) <= 1:
            logger.warning(
                "last_owner_protected",
                org_id=member.organization_id,
                user_id=member.user_id,
                action=action,
            )
            raise ConflictError(f"Cannot {action} the last owner of the organization")

    async def _adjust_user_count(self, organization_id: str, delta: int) -> None:
        object_id = parse_object_id(organization_id)
        with storage_operation("update", "organizations", org_id=organization_id):
            await Organization.find_one(Organization.id == object_id).update(
                {"$inc": {"usage.current_users": delta}}
            )

    async def add_member(
        self,
        organization: Organization,
        user_id: str,
        role: Role = Role.MEMBER,
        invited_by: Optional[str] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> OrganizationMember:
        """
        Insert a membership, or reactivate a removed one.

        Raises:
            ConflictError: the user already has a membership that is not removed
        """
        organization_id = str(organization.id)
        now = datetime.utcnow()
        existing = await OrganizationMember.find_one(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
        )
        if existing is not None and existing.status != MemberStatus.REMOVED:
            raise ConflictError("User is already a member of this organization")

        if existing is not None:
            member = existing
            member.role = role
            member.status = MemberStatus.ACTIVE
            member.invited_by = invited_by
            member.joined_at = now
            member.removed_at = None
            member.removed_by = None
            member.email = email or member.email
            member.display_name = display_name or member.display_name
            member.updated_at = now
            with storage_operation("update", "organization_members", org_id=organization_id):
                await member.save()
        else:
            member = OrganizationMember(
                organization_id=organization_id,
                user_id=user_id,
                role=role,
                invited_by=invited_by,
                email=email,
                display_name=display_name,
            )
            with storage_operation("insert", "organization_members", org_id=organization_id):
                await member.insert()

        await self._adjust_user_count(organization_id, 1)
        await self.guard.invalidate_membership(organization_id, user_id)
        logger.info(
            "member_added",
            org_id=organization_id,
            user_id=user_id,
            role=role.value,
            reactivated=existing is not None,
        )
        return member

    async def change_role(
        self,
        ctx: OrgContext,
        user_id: str,
        new_role: Role,
        request: Optional[Request] = None,
    ) -> OrganizationMember:
        member = await self.get_member(ctx.organization_id, user_id)
        await self.guard.enforce(
            ctx,
            Permission.MEMBERS_ROLES,
            resource=member,
            context={"target_role": member.role, "new_role": new_role},
            audit_action="member:role_change",
            request=request,
        )
        if member.role == new_role:
            return member
        if new_role != Role.OWNER:
            await self._ensure_not_last_owner(member, "demote")

        old_role = member.role
        member.role = new_role
        member.updated_at = datetime.utcnow()
        with storage_operation("update", "organization_members", org_id=ctx.organization_id):
            await member.save()
        await self.guard.invalidate_membership(ctx.organization_id, user_id)

        logger.info(
            "member_role_changed",
            org_id=ctx.organization_id,
            user_id=user_id,
            old_role=old_role.value,
            new_role=new_role.value,
            changed_by=ctx.caller.user_id,
        )
        await self.audit.log_success(
            "member:role_change",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="OrganizationMember",
            resource_id=user_id,
            before={"role": old_role.value},
            after={"role": new_role.value},
            request=request,
        )
        return member

    async def remove_member(
        self,
        ctx: OrgContext,
        user_id: str,
        request: Optional[Request] = None,
    ) -> OrganizationMember:
        member = await self.get_member(ctx.organization_id, user_id)
        await self.guard.enforce(
            ctx,
            Permission.MEMBERS_REMOVE,
            resource=member,
            context={"target_role": member.role},
            audit_action="member:remove",
            request=request,
        )
        await self._ensure_not_last_owner(member, "remove")

        was_counted = member.status != MemberStatus.REMOVED
        now = datetime.utcnow()
        member.status = MemberStatus.REMOVED
        member.removed_at = now
        member.removed_by = ctx.caller.user_id
        member.updated_at = now
        with storage_operation("update", "organization_members", org_id=ctx.organization_id):
            await member.save()
        if was_counted:
            await self._adjust_user_count(ctx.organization_id, -1)
        await self.guard.invalidate_membership(ctx.organization_id, user_id)

        logger.info("member_removed", org_id=ctx.organization_id, user_id=user_id, removed_by=ctx.caller.user_id)
        await self.audit.log_success(
            "member:remove",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="OrganizationMember",
            resource_id=user_id,
            before={"role": member.role.value, "status": MemberStatus.ACTIVE.value},
            after={"status": MemberStatus.REMOVED.value},
            request=request,
        )
        return member

    async def suspend_member(
        self,
        ctx: OrgContext,
        user_id: str,
        request: Optional[Request] = None,
    ) -> OrganizationMember:
        member = await self.get_member(ctx.organization_id, user_id)
        await self.guard.enforce(
            ctx,
            Permission.MEMBERS_REMOVE,
            resource=member,
            context={"target_role": member.role},
            audit_action="member:suspend",
            request=request,
        )
        if member.role == Role.OWNER:
            raise ForbiddenError("Owners cannot be suspended")
        if member.status == MemberStatus.SUSPENDED:
            raise ConflictError("Member is already suspended")

        now = datetime.utcnow()
        member.status = MemberStatus.SUSPENDED
        member.suspended_at = now
        member.updated_at = now
        with storage_operation("update", "organization_members", org_id=ctx.organization_id):
            await member.save()
        await self.guard.invalidate_membership(ctx.organization_id, user_id)

        logger.info("member_suspended", org_id=ctx.organization_id, user_id=user_id)
        await self.audit.log_success(
            "member:suspend",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="OrganizationMember",
            resource_id=user_id,
            before={"status": MemberStatus.ACTIVE.value},
            after={"status": MemberStatus.SUSPENDED.value},
            request=request,
        )
        return member

    async def reactivate_member(
        self,
        ctx: OrgContext,
        user_id: str,
        request: Optional[Request] = None,
    ) -> OrganizationMember:
        member = await self.get_member(ctx.organization_id, user_id)
        await self.guard.enforce(
            ctx,
            Permission.MEMBERS_REMOVE,
            resource=member,
            context={"target_role": member.role},
            audit_action="member:reactivate",
            request=request,
        )
        if member.status != MemberStatus.SUSPENDED:
            raise ConflictError("Only suspended members can be reactivated")

        member.status = MemberStatus.ACTIVE
        member.suspended_at = None
        member.updated_at = datetime.utcnow()
        with storage_operation("update", "organization_members", org_id=ctx.organization_id):
            await member.save()
        await self.guard.invalidate_membership(ctx.organization_id, user_id)

        logger.info("member_reactivated", org_id=ctx.organization_id, user_id=user_id)
        await self.audit.log_success(
            "member:reactivate",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="OrganizationMember",
            resource_id=user_id,
            before={"status": MemberStatus.SUSPENDED.value},
            after={"status": MemberStatus.ACTIVE.value},
            request=request,
        )
        return member

    # ------------------------------------------------------------------
    # Invite codes
    # ------------------------------------------------------------------

    async def create_invite_code(
        self,
        ctx: OrgContext,
        default_role: Role = Role.MEMBER,
        name: Optional[str] = None,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        request: Optional[Request] = None,
    ) -> InviteCode:
        await self.guard.enforce(
            ctx,
            Permission.INVITE_CODES_CREATE,
            context={"default_role": default_role},
            audit_action="invite_code:create",
            request=request,
        )
        if expires_at is not None and expires_at <= datetime.utcnow():
            raise BadRequestError("expires_at must be in the future")

        invite = InviteCode(
            organization_id=ctx.organization_id,
            name=name,
            default_role=default_role,
            max_uses=max_uses,
            expires_at=expires_at,
            created_by=ctx.caller.user_id,
        )
        with storage_operation("insert", "invite_codes", org_id=ctx.organization_id):
            await invite.insert()

        logger.info(
            "invite_code_created",
            org_id=ctx.organization_id,
            invite_code_id=str(invite.id),
            default_role=default_role.value,
        )
        await self.audit.log_success(
            "invite_code:create",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="InviteCode",
            resource_id=str(invite.id),
            after={"default_role": default_role.value, "max_uses": max_uses},
            request=request,
        )
        return invite

    async def list_invite_codes(
        self,
        organization_id: str,
        status: Optional[InviteCodeStatus] = None,
    ) -> List[InviteCode]:
        query = {"organization_id": organization_id}
        if status is not None:
            query["status"] = status.value
        return await InviteCode.find(query).sort(-InviteCode.created_at).to_list()

    async def disable_invite_code(
        self,
        ctx: OrgContext,
        code_id: str,
        request: Optional[Request] = None,
    ) -> InviteCode:
        object_id = parse_object_id(code_id)
        invite = await InviteCode.get(object_id) if object_id else None
        if invite is None:
            raise NotFoundError(f"Invite code {code_id} not found")
        await self.guard.enforce(
            ctx,
            Permission.INVITE_CODES_DISABLE,
            resource=invite,
            audit_action="invite_code:disable",
            request=request,
        )
        if invite.status == InviteCodeStatus.DISABLED:
            return invite

        now = datetime.utcnow()
        invite.status = InviteCodeStatus.DISABLED
        invite.disabled_by = ctx.caller.user_id
        invite.disabled_at = now
        invite.updated_at = now
        with storage_operation("update", "invite_codes", org_id=ctx.organization_id):
            await invite.save()

        logger.info("invite_code_disabled", org_id=ctx.organization_id, invite_code_id=code_id)
        await self.audit.log_success(
            "invite_code:disable",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="InviteCode",
            resource_id=code_id,
            request=request,
        )
        return invite

    async def redeem_invite_code(
        self,
        caller: CallerIdentity,
        code: str,
        request: Optional[Request] = None,
    ) -> Tuple[Organization, OrganizationMember]:
        """
        Join the code's organization with the code's default role.

        Raises:
            NotFoundError: unknown code
            BadRequestError: code disabled, expired or used up
            ForbiddenError: organization not operational or at its user limit
            ConflictError: caller is already a member
        """
        invite = await InviteCode.find_one(InviteCode.code == code.strip().upper())
        if invite is None:
            raise NotFoundError("Invite code not found")

        now = datetime.utcnow()
        if not invite.redeemable(now):
            if invite.status == InviteCodeStatus.ACTIVE and invite.expires_at and invite.expires_at <= now:
                invite.status = InviteCodeStatus.EXPIRED
                invite.updated_at = now
                with storage_operation("update", "invite_codes", org_id=invite.organization_id):
                    await invite.save()
            raise BadRequestError("Invite code is no longer valid")

        organization = await self.guard.load_organization(invite.organization_id)
        operational, reason = organization.operational_status()
        if not operational:
            raise ForbiddenError(reason)
        invite_decision = evaluate_policy(
            "member:invite",
            PolicyContext(caller=caller, organization=organization, role=None),
        )
        if not invite_decision:
            raise ForbiddenError(invite_decision.reason)

        member = await self.add_member(
            organization,
            caller.user_id,
            role=invite.default_role,
            invited_by=invite.created_by,
            email=caller.email,
            display_name=caller.name,
        )
        with storage_operation("update", "invite_codes", org_id=invite.organization_id):
            await InviteCode.find_one(InviteCode.id == invite.id).update(
                {"$inc": {"current_uses": 1}, "$set": {"updated_at": now}}
            )

        await self.audit.log_success(
            "member:join",
            organization_id=invite.organization_id,
            actor=caller,
            resource_type="OrganizationMember",
            resource_id=caller.user_id,
            description="Joined via invite code",
            metadata={"invite_code_id": str(invite.id), "role": invite.default_role.value},
            request=request,
        )
        return organization, member


_organization_service: Optional[OrganizationService] = None


def get_organization_service() -> OrganizationService:
    global _organization_service
    if _organization_service is None:
        _organization_service = OrganizationService()
    return _organization_service
