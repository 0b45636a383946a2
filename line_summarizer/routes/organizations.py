from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from line_summarizer.core.authorization import (
    OrgContext,
    PermissionGuard,
    get_permission_guard,
    require_permission,
)
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.oauth_validator import CallerIdentity, validate_access_token
from line_summarizer.core.permissions import Permission
from line_summarizer.core.rate_limit import limiter
from line_summarizer.dependencies import Pagination, pagination
from line_summarizer.models.invite_code import InviteCodeStatus
from line_summarizer.models.organization_member import MemberStatus
from line_summarizer.schemas.organization import (
    AuditLogListResponse,
    AuditLogResponse,
    InviteCodeCreate,
    InviteCodeListResponse,
    InviteCodeResponse,
    JoinRequest,
    JoinResponse,
    MemberListResponse,
    MemberResponse,
    OrganizationCreate,
    OrganizationResponse,
    RoleUpdate,
)
from line_summarizer.services.audit_service import AuditRecorder, get_audit_recorder
from line_summarizer.services.organization_service import OrganizationService, get_organization_service

router = APIRouter()
logger = get_logger(__name__)


@router.post("/organizations", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def create_organization(
    request: Request,
    data: OrganizationCreate,
    caller: CallerIdentity = Depends(validate_access_token),
    service: OrganizationService = Depends(get_organization_service),
):
    """Create an organization on the free plan. The caller becomes its owner."""
    logger.info("api_create_organization", slug=data.slug, user_id=caller.user_id)
    organization = await service.create_organization(caller, data.name, data.slug, request=request)
    return OrganizationResponse.from_model(organization, include_activation_code=True)


@router.post("/organizations/join", response_model=JoinResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def join_organization(
    request: Request,
    data: JoinRequest,
    caller: CallerIdentity = Depends(validate_access_token),
    service: OrganizationService = Depends(get_organization_service),
):
    """Redeem an invite code and become a member with the code's default role."""
    logger.info("api_join_organization", user_id=caller.user_id)
    organization, member = await service.redeem_invite_code(caller, data.code, request=request)
    return JoinResponse(
        organization=OrganizationResponse.from_model(organization),
        member=MemberResponse.from_model(member),
    )


@router.get("/organizations/{org_id}", response_model=OrganizationResponse)
async def get_organization(
    ctx: OrgContext = Depends(require_permission(Permission.SETTINGS_VIEW)),
    guard: PermissionGuard = Depends(get_permission_guard),
):
    """Organization settings, limits and usage. The activation code is shown to owners and admins."""
    can_link = guard.decide(ctx.caller, ctx.organization, ctx.role, Permission.GROUPS_SETTINGS)
    return OrganizationResponse.from_model(ctx.organization, include_activation_code=bool(can_link))


@router.post("/organizations/{org_id}/activation-code", response_model=OrganizationResponse)
@limiter.limit("5/minute")
async def regenerate_activation_code(
    request: Request,
    ctx: OrgContext = Depends(require_permission(Permission.GROUPS_SETTINGS)),
    service: OrganizationService = Depends(get_organization_service),
):
    """Issue a new activation code. Rooms already linked stay linked."""
    organization = await service.regenerate_activation_code(ctx, request=request)
    return OrganizationResponse.from_model(organization, include_activation_code=True)


# ----------------------------------------------------------------------
# Members
# ----------------------------------------------------------------------

@router.get("/organizations/{org_id}/members", response_model=MemberListResponse)
async def list_members(
    status_filter: Optional[MemberStatus] = Query(None, alias="status"),
    ctx: OrgContext = Depends(require_permission(Permission.MEMBERS_LIST)),
    service: OrganizationService = Depends(get_organization_service),
):
    members = await service.list_members(ctx.organization_id, status=status_filter)
    return MemberListResponse(
        members=[MemberResponse.from_model(m) for m in members],
        total=len(members),
    )


@router.put("/organizations/{org_id}/members/{user_id}/role", response_model=MemberResponse)
async def change_member_role(
    request: Request,
    user_id: str,
    data: RoleUpdate,
    ctx: OrgContext = Depends(require_permission(Permission.MEMBERS_ROLES)),
    service: OrganizationService = Depends(get_organization_service),
):
    logger.info(
        "api_change_member_role",
        org_id=ctx.organization_id,
        target_user_id=user_id,
        new_role=data.role.value,
        user_id=ctx.caller.user_id,
    )
    member = await service.change_role(ctx, user_id, data.role, request=request)
    return MemberResponse.from_model(member)


@router.delete("/organizations/{org_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    request: Request,
    user_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.MEMBERS_REMOVE)),
    service: OrganizationService = Depends(get_organization_service),
):
    logger.info("api_remove_member", org_id=ctx.organization_id, target_user_id=user_id, user_id=ctx.caller.user_id)
    await service.remove_member(ctx, user_id, request=request)
    return None


@router.post("/organizations/{org_id}/members/{user_id}/suspend", response_model=MemberResponse)
async def suspend_member(
    request: Request,
    user_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.MEMBERS_REMOVE)),
    service: OrganizationService = Depends(get_organization_service),
):
    member = await service.suspend_member(ctx, user_id, request=request)
    return MemberResponse.from_model(member)


@router.post("/organizations/{org_id}/members/{user_id}/reactivate", response_model=MemberResponse)
async def reactivate_member(
    request: Request,
    user_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.MEMBERS_REMOVE)),
    service: OrganizationService = Depends(get_organization_service),
):
    member = await service.reactivate_member(ctx, user_id, request=request)
    return MemberResponse.from_model(member)


# ----------------------------------------------------------------------
# Invite codes
# ----------------------------------------------------------------------

@router.get("/organizations/{org_id}/invite-codes", response_model=InviteCodeListResponse)
async def list_invite_codes(
    status_filter: Optional[InviteCodeStatus] = Query(None, alias="status"),
    ctx: OrgContext = Depends(require_permission(Permission.INVITE_CODES_LIST)),
    service: OrganizationService = Depends(get_organization_service),
):
    invites = await service.list_invite_codes(ctx.organization_id, status=status_filter)
    return InviteCodeListResponse(invite_codes=[InviteCodeResponse.from_model(i) for i in invites])


@router.post(
    "/organizations/{org_id}/invite-codes",
    response_model=InviteCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("20/minute")
async def create_invite_code(
    request: Request,
    data: InviteCodeCreate,
    ctx: OrgContext = Depends(require_permission(Permission.INVITE_CODES_CREATE)),
    service: OrganizationService = Depends(get_organization_service),
):
    invite = await service.create_invite_code(
        ctx,
        default_role=data.default_role,
        name=data.name,
        max_uses=data.max_uses,
        expires_at=data.expires_at,
        request=request,
    )
    return InviteCodeResponse.from_model(invite)


@router.delete("/organizations/{org_id}/invite-codes/{code_id}", response_model=InviteCodeResponse)
async def disable_invite_code(
    request: Request,
    code_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.INVITE_CODES_DISABLE)),
    service: OrganizationService = Depends(get_organization_service),
):
    invite = await service.disable_invite_code(ctx, code_id, request=request)
    return InviteCodeResponse.from_model(invite)


# ----------------------------------------------------------------------
# Audit trail
# ----------------------------------------------------------------------

@router.get("/organizations/{org_id}/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    action: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: Pagination = Depends(pagination),
    ctx: OrgContext = Depends(require_permission(Permission.AUDIT_VIEW)),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Newest-first audit trail of the organization, filterable."""
    logs, total = await audit.list_logs(
        ctx.organization_id,
        action=action,
        category=category,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        start_date=start_date,
        end_date=end_date,
        page=page.page,
        page_size=page.page_size,
    )
    return AuditLogListResponse(
        logs=[AuditLogResponse.from_model(entry) for entry in logs],
        total=total,
        page=page.page,
        page_size=page.page_size,
        has_more=page.has_more(total),
    )
