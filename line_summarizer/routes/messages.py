from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from line_summarizer.core.authorization import OrgContext, require_permission
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.permissions import Permission
from line_summarizer.core.rate_limit import limiter
from line_summarizer.dependencies import Pagination, pagination
from line_summarizer.schemas.conversation import MessageListResponse, MessageResponse
from line_summarizer.services.conversation_service import ConversationService, get_conversation_service

router = APIRouter()
logger = get_logger(__name__)


@router.get("/organizations/{org_id}/messages/search", response_model=MessageListResponse)
@limiter.limit("30/minute")
async def search_messages(
    request: Request,
    q: str = Query(..., min_length=1, max_length=200, description="Case-insensitive substring"),
    room_id: Optional[str] = Query(None),
    page: Pagination = Depends(pagination),
    ctx: OrgContext = Depends(require_permission(Permission.MESSAGES_SEARCH)),
    service: ConversationService = Depends(get_conversation_service),
):
    """Search message content across the organization, newest first."""
    logger.info("api_search_messages", org_id=ctx.organization_id, user_id=ctx.caller.user_id, query_length=len(q))
    messages, total = await service.search_messages(
        ctx.organization_id,
        q,
        room_id=room_id,
        page=page.page,
        page_size=page.page_size,
    )
    return MessageListResponse(
        messages=[MessageResponse.from_model(m) for m in messages],
        total=total,
        page=page.page,
        page_size=page.page_size,
        has_more=page.has_more(total),
    )
