from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from line_summarizer.core.authorization import OrgContext, require_permission
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.permissions import Permission
from line_summarizer.core.rate_limit import limiter
from line_summarizer.dependencies import Pagination, pagination
from line_summarizer.models.chat_session import SessionStatus
from line_summarizer.schemas.conversation import (
    MessageListResponse,
    MessageResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
    SummaryResponse,
)
from line_summarizer.services.conversation_service import ConversationService, get_conversation_service

router = APIRouter()
logger = get_logger(__name__)


@router.get("/organizations/{org_id}/sessions", response_model=SessionListResponse)
async def list_sessions(
    status_filter: Optional[SessionStatus] = Query(None, alias="status"),
    room_id: Optional[str] = Query(None),
    page: Pagination = Depends(pagination),
    ctx: OrgContext = Depends(require_permission(Permission.SESSIONS_LIST)),
    service: ConversationService = Depends(get_conversation_service),
):
    sessions, total = await service.list_sessions(
        ctx.organization_id,
        status=status_filter,
        room_id=room_id,
        page=page.page,
        page_size=page.page_size,
    )
    return SessionListResponse(
        sessions=[SessionResponse.from_model(s) for s in sessions],
        total=total,
        page=page.page,
        page_size=page.page_size,
        has_more=page.has_more(total),
    )


@router.get("/organizations/{org_id}/sessions/stats", response_model=SessionStatsResponse)
async def session_stats(
    ctx: OrgContext = Depends(require_permission(Permission.SESSIONS_LIST)),
    service: ConversationService = Depends(get_conversation_service),
):
    return SessionStatsResponse(**await service.session_stats(ctx.organization_id))


@router.get("/organizations/{org_id}/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.SESSIONS_VIEW)),
    service: ConversationService = Depends(get_conversation_service),
):
    session = await service.get_session(ctx, session_id)
    return SessionResponse.from_model(session)


@router.post("/organizations/{org_id}/sessions/{session_id}/close", response_model=SessionResponse)
async def close_session(
    request: Request,
    session_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.SESSIONS_CLOSE)),
    service: ConversationService = Depends(get_conversation_service),
):
    """
    Force-close an active session and attempt its summary.

    Owners and admins only; the session must belong to the organization.
    Closing always succeeds even if summary generation fails.
    """
    logger.info("api_close_session", session_id=session_id, org_id=ctx.organization_id, user_id=ctx.caller.user_id)
    session = await service.close_session(ctx, session_id, request=request)
    return SessionResponse.from_model(session)


@router.get("/organizations/{org_id}/sessions/{session_id}/messages", response_model=MessageListResponse)
async def list_session_messages(
    session_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=500),
    ctx: OrgContext = Depends(require_permission(Permission.MESSAGES_LIST)),
    service: ConversationService = Depends(get_conversation_service),
):
    """Transcript of one session, oldest first."""
    session = await service.get_session(ctx, session_id, Permission.MESSAGES_LIST)
    messages, total = await service.list_messages(session, page=page, page_size=page_size)
    return MessageListResponse(
        messages=[MessageResponse.from_model(m) for m in messages],
        total=total,
        page=page,
        page_size=page_size,
        has_more=page * page_size < total,
    )


@router.post(
    "/organizations/{org_id}/sessions/{session_id}/summary",
    response_model=SummaryResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("10/minute")
async def regenerate_summary(
    request: Request,
    session_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.SUMMARIES_GENERATE)),
    service: ConversationService = Depends(get_conversation_service),
):
    """
    Re-run summary generation for a closed session.

    The result may be a failed Summary (status=failed with error_message);
    the session stays closed either way.
    """
    logger.info("api_regenerate_summary", session_id=session_id, org_id=ctx.organization_id, user_id=ctx.caller.user_id)
    summary = await service.regenerate_summary(ctx, session_id, request=request)
    return SummaryResponse.from_model(summary)
