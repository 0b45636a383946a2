from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from line_summarizer.core.authorization import OrgContext, require_permission
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.permissions import Permission
from line_summarizer.dependencies import Pagination, pagination
from line_summarizer.schemas.conversation import (
    RoomArchiveResponse,
    RoomListResponse,
    RoomResponse,
    RoomUpdate,
)
from line_summarizer.services.conversation_service import ConversationService, get_conversation_service

router = APIRouter()
logger = get_logger(__name__)


@router.get("/organizations/{org_id}/rooms", response_model=RoomListResponse)
async def list_rooms(
    is_active: Optional[bool] = Query(None),
    page: Pagination = Depends(pagination),
    ctx: OrgContext = Depends(require_permission(Permission.GROUPS_LIST)),
    service: ConversationService = Depends(get_conversation_service),
):
    rooms, total = await service.list_rooms(
        ctx.organization_id,
        is_active=is_active,
        page=page.page,
        page_size=page.page_size,
    )
    return RoomListResponse(
        rooms=[RoomResponse.from_model(r) for r in rooms],
        total=total,
        page=page.page,
        page_size=page.page_size,
        has_more=page.has_more(total),
    )


@router.get("/organizations/{org_id}/rooms/{room_id}", response_model=RoomResponse)
async def get_room(
    room_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.GROUPS_VIEW)),
    service: ConversationService = Depends(get_conversation_service),
):
    room = await service.get_room(ctx, room_id)
    return RoomResponse.from_model(room)


@router.patch("/organizations/{org_id}/rooms/{room_id}", response_model=RoomResponse)
async def rename_room(
    request: Request,
    room_id: str,
    data: RoomUpdate,
    ctx: OrgContext = Depends(require_permission(Permission.GROUPS_SETTINGS)),
    service: ConversationService = Depends(get_conversation_service),
):
    room = await service.rename_room(ctx, room_id, data.name, request=request)
    return RoomResponse.from_model(room)


@router.post("/organizations/{org_id}/rooms/{room_id}/archive", response_model=RoomArchiveResponse)
async def archive_room(
    request: Request,
    room_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.GROUPS_ARCHIVE)),
    service: ConversationService = Depends(get_conversation_service),
):
    """Deactivate the room and force-close its open session."""
    logger.info("api_archive_room", room_id=room_id, org_id=ctx.organization_id, user_id=ctx.caller.user_id)
    room, closed = await service.archive_room(ctx, room_id, request=request)
    return RoomArchiveResponse(
        room=RoomResponse.from_model(room),
        closed_session_id=closed.session_id if closed else None,
    )
