"""
ConversationService - dashboard operations on rooms, sessions, messages and summaries.

Lookups by id are not filtered by organization. Every resource found is
handed to PermissionGuard.enforce(), whose ABAC policy denies resources of
another tenant with a Forbidden reason (logged as a security violation).
List queries are always scoped to the caller's organization.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request

from line_summarizer.core.authorization import OrgContext, PermissionGuard, get_permission_guard, parse_object_id
from line_summarizer.core.exceptions import (
    NotFoundError,
    RoomNotFoundError,
    SessionNotFoundError,
)
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.permissions import Permission
from line_summarizer.db.mongodb import storage_operation
from line_summarizer.models.chat_session import ChatSession, SessionStatus
from line_summarizer.models.message import Message
from line_summarizer.models.room import Room
from line_summarizer.models.summary import Summary, SummaryStatus
from line_summarizer.services.audit_service import AuditRecorder, get_audit_recorder
from line_summarizer.services.session_manager import SessionLifecycleManager, get_session_manager

logger = get_logger(__name__)


class ConversationService:

    def __init__(
        self,
        guard: Optional[PermissionGuard] = None,
        audit: Optional[AuditRecorder] = None,
        session_manager: Optional[SessionLifecycleManager] = None,
    ):
        self.guard = guard or get_permission_guard()
        self.audit = audit or get_audit_recorder()
        self.session_manager = session_manager or get_session_manager()

    @staticmethod
    async def _page(query, sort, page: int, page_size: int) -> Tuple[List[Any], int]:
        total = await query.count()
        items = await query.sort(sort).skip((page - 1) * page_size).limit(page_size).to_list()
        return items, total

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def list_rooms(
        self,
        organization_id: str,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[Room], int]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if is_active is not None:
            query["is_active"] = is_active
        return await self._page(Room.find(query), -Room.updated_at, page, page_size)

    async def get_room(
        self,
        ctx: OrgContext,
        room_id: str,
        permission: Permission = Permission.GROUPS_VIEW,
        audit_action: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> Room:
        object_id = parse_object_id(room_id)
        room = await Room.get(object_id) if object_id else None
        if room is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        await self.guard.enforce(ctx, permission, resource=room, audit_action=audit_action, request=request)
        return room

    async def rename_room(
        self,
        ctx: OrgContext,
        room_id: str,
        name: str,
        request: Optional[Request] = None,
    ) -> Room:
        room = await self.get_room(ctx, room_id, Permission.GROUPS_SETTINGS, "room:update", request)
        old_name = room.name
        room.name = name
        room.name_is_fallback = False
        room.updated_at = datetime.utcnow()
        with storage_operation("update", "rooms", room_id=room_id):
            await room.save()

        await self.audit.log_success(
            "room:update",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="Room",
            resource_id=room_id,
            before={"name": old_name},
            after={"name": name},
            request=request,
        )
        return room

    async def archive_room(
        self,
        ctx: OrgContext,
        room_id: str,
        request: Optional[Request] = None,
    ) -> Tuple[Room, Optional[ChatSession]]:
        room = await self.get_room(ctx, room_id, Permission.GROUPS_ARCHIVE, "room:archive", request)
        closed = await self.session_manager.archive_room(room)
        await self.audit.log_success(
            "room:archive",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="Room",
            resource_id=room_id,
            metadata={"closed_session_id": closed.session_id if closed else None},
            request=request,
        )
        return room, closed

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(
        self,
        organization_id: str,
        status: Optional[SessionStatus] = None,
        room_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[ChatSession], int]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if status is not None:
            query["status"] = status.value
        if room_id:
            query["room_id"] = room_id
        return await self._page(ChatSession.find(query), -ChatSession.start_time, page, page_size)

    async def get_session(
        self,
        ctx: OrgContext,
        session_id: str,
        permission: Permission = Permission.SESSIONS_VIEW,
        audit_action: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> ChatSession:
        """Look up by public id (sess_...) and enforce the permission on it."""
        session = await ChatSession.find_one(ChatSession.session_id == session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        await self.guard.enforce(ctx, permission, resource=session, audit_action=audit_action, request=request)
        return session

    async def session_stats(self, organization_id: str) -> Dict[str, Any]:
        by_status = {}
        for status in SessionStatus:
            by_status[status.value] = await ChatSession.find(
                ChatSession.organization_id == organization_id,
                ChatSession.status == status,
            ).count()

        closed_query = ChatSession.find(
            ChatSession.organization_id == organization_id,
            ChatSession.status == SessionStatus.CLOSED,
        )
        average = await closed_query.avg(ChatSession.message_count) if by_status["closed"] else None

        return {
            "total_sessions": sum(by_status.values()),
            "by_status": by_status,
            "total_messages": await Message.find(Message.organization_id == organization_id).count(),
            "total_summaries": await Summary.find(
                Summary.organization_id == organization_id,
                Summary.status == SummaryStatus.COMPLETED,
            ).count(),
            "average_messages_per_closed_session": round(average, 2) if average is not None else 0.0,
        }

    async def close_session(
        self,
        ctx: OrgContext,
        session_id: str,
        request: Optional[Request] = None,
    ) -> ChatSession:
        session = await self.get_session(ctx, session_id, Permission.SESSIONS_CLOSE, "session:close", request)
        closed = await self.session_manager.force_close(session)
        await self.audit.log_success(
            "session:close",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="ChatSession",
            resource_id=session_id,
            before={"status": SessionStatus.ACTIVE.value},
            after={"status": closed.status.value, "close_reason": closed.close_reason.value},
            request=request,
        )
        return closed

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(
        self,
        session: ChatSession,
        page: int = 1,
        page_size: int = 100,
    ) -> Tuple[List[Message], int]:
        return await self._page(
            Message.find(Message.session_id == session.session_id),
            +Message.timestamp,
            page,
            page_size,
        )

    async def search_messages(
        self,
        organization_id: str,
        text: str,
        room_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[Message], int]:
        """Case-insensitive substring search within one organization."""
        query: Dict[str, Any] = {
            "organization_id": organization_id,
            "content": {"$regex": re.escape(text), "$options": "i"},
        }
        if room_id:
            query["room_id"] = room_id
        return await self._page(Message.find(query), -Message.timestamp, page, page_size)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def list_summaries(
        self,
        organization_id: str,
        status: Optional[SummaryStatus] = None,
        room_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[Summary], int]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if status is not None:
            query["status"] = status.value
        if room_id:
            query["room_id"] = room_id
        return await self._page(Summary.find(query), -Summary.created_at, page, page_size)

    async def get_summary(
        self,
        ctx: OrgContext,
        summary_id: str,
        permission: Permission = Permission.SUMMARIES_VIEW,
        audit_action: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> Summary:
        object_id = parse_object_id(summary_id)
        summary = await Summary.get(object_id) if object_id else None
        if summary is None:
            raise NotFoundError(f"Summary {summary_id} not found")
        await self.guard.enforce(ctx, permission, resource=summary, audit_action=audit_action, request=request)
        return summary

    async def regenerate_summary(
        self,
        ctx: OrgContext,
        session_id: str,
        request: Optional[Request] = None,
    ) -> Summary:
        session = await self.get_session(
            ctx, session_id, Permission.SUMMARIES_GENERATE, "summary:regenerate", request
        )
        summary = await self.session_manager.regenerate_summary(session)
        await self.audit.log_success(
            "summary:regenerate",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="Summary",
            resource_id=str(summary.id),
            metadata={
                "session_id": session_id,
                "status": summary.status.value,
                "attempts": summary.metadata.attempts,
            },
            request=request,
        )
        return summary

    async def update_summary(
        self,
        ctx: OrgContext,
        summary_id: str,
        content: Optional[str] = None,
        key_topics: Optional[List[str]] = None,
        request: Optional[Request] = None,
    ) -> Summary:
        summary = await self.get_summary(ctx, summary_id, Permission.SUMMARIES_EDIT, "summary:update", request)
        before = {"content": summary.content, "key_topics": list(summary.key_topics)}
        if content is not None:
            summary.content = content
        if key_topics is not None:
            summary.key_topics = key_topics
        summary.edited_by = ctx.caller.user_id
        summary.updated_at = datetime.utcnow()
        with storage_operation("update", "summaries", summary_id=summary_id):
            await summary.save()

        await self.audit.log_success(
            "summary:update",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="Summary",
            resource_id=summary_id,
            before=before,
            after={"content": summary.content, "key_topics": summary.key_topics},
            request=request,
        )
        return summary

    async def delete_summary(
        self,
        ctx: OrgContext,
        summary_id: str,
        request: Optional[Request] = None,
    ) -> None:
        summary = await self.get_summary(ctx, summary_id, Permission.SUMMARIES_DELETE, "summary:delete", request)
        with storage_operation("delete", "summaries", summary_id=summary_id):
            await summary.delete()
            await ChatSession.find_one(ChatSession.session_id == summary.session_id).update(
                {"$set": {"summary_id": None, "updated_at": datetime.utcnow()}}
            )

        logger.info("summary_deleted", summary_id=summary_id, session_id=summary.session_id, org_id=ctx.organization_id)
        await self.audit.log_success(
            "summary:delete",
            organization_id=ctx.organization_id,
            actor=ctx.caller,
            resource_type="Summary",
            resource_id=summary_id,
            metadata={"session_id": summary.session_id},
            request=request,
        )


_conversation_service: Optional[ConversationService] = None


def get_conversation_service() -> ConversationService:
    global _conversation_service
    if _conversation_service is None:
        _conversation_service = ConversationService()
    return _conversation_service
