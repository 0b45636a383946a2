from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from line_summarizer.core.authorization import OrgContext, require_permission
from line_summarizer.core.exceptions import BadRequestError
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.permissions import Permission
from line_summarizer.dependencies import Pagination, pagination
from line_summarizer.models.summary import SummaryStatus
from line_summarizer.schemas.conversation import SummaryListResponse, SummaryResponse, SummaryUpdate
from line_summarizer.services.conversation_service import ConversationService, get_conversation_service

router = APIRouter()
logger = get_logger(__name__)


@router.get("/organizations/{org_id}/summaries", response_model=SummaryListResponse)
async def list_summaries(
    status_filter: Optional[SummaryStatus] = Query(None, alias="status"),
    room_id: Optional[str] = Query(None),
    page: Pagination = Depends(pagination),
    ctx: OrgContext = Depends(require_permission(Permission.SUMMARIES_LIST)),
    service: ConversationService = Depends(get_conversation_service),
):
    summaries, total = await service.list_summaries(
        ctx.organization_id,
        status=status_filter,
        room_id=room_id,
        page=page.page,
        page_size=page.page_size,
    )
    return SummaryListResponse(
        summaries=[SummaryResponse.from_model(s) for s in summaries],
        total=total,
        page=page.page,
        page_size=page.page_size,
        has_more=page.has_more(total),
    )


@router.get("/organizations/{org_id}/summaries/{summary_id}", response_model=SummaryResponse)
async def get_summary(
    summary_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.SUMMARIES_VIEW)),
    service: ConversationService = Depends(get_conversation_service),
):
    summary = await service.get_summary(ctx, summary_id)
    return SummaryResponse.from_model(summary)


@router.patch("/organizations/{org_id}/summaries/{summary_id}", response_model=SummaryResponse)
async def update_summary(
    request: Request,
    summary_id: str,
    data: SummaryUpdate,
    ctx: OrgContext = Depends(require_permission(Permission.SUMMARIES_EDIT)),
    service: ConversationService = Depends(get_conversation_service),
):
    """Edit summary content or key topics. HTML is stripped."""
    if data.content is None and data.key_topics is None:
        raise BadRequestError("Nothing to update")
    logger.info("api_update_summary", summary_id=summary_id, org_id=ctx.organization_id, user_id=ctx.caller.user_id)
    summary = await service.update_summary(
        ctx,
        summary_id,
        content=data.content,
        key_topics=data.key_topics,
        request=request,
    )
    return SummaryResponse.from_model(summary)


@router.delete("/organizations/{org_id}/summaries/{summary_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_summary(
    request: Request,
    summary_id: str,
    ctx: OrgContext = Depends(require_permission(Permission.SUMMARIES_DELETE)),
    service: ConversationService = Depends(get_conversation_service),
):
    logger.info("api_delete_summary", summary_id=summary_id, org_id=ctx.organization_id, user_id=ctx.caller.user_id)
    await service.delete_summary(ctx, summary_id, request=request)
    return None
