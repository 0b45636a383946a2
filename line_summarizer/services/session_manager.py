"""
Session Lifecycle Manager.

Decides, for every inbound message, which ChatSession owns it:

    NoActiveSession --message--> Active --trigger--> Closed --kickoff--> Summarizing --> Closed

Closure triggers (either one):
- message count: count(Message where session_id = S) >= max_messages
- age: now - start_time >= timeout_hours

Two-phase check per message:
1. Pre-check the existing active session BEFORE attaching. If it already
   qualifies, close it and open a new session for the incoming message.
2. Attach the message, then post-check the owning session and close it now
   if this message reached the ceiling.

Calls for the same room are serialized with a per-room asyncio.Lock held for
pre-check -> attach -> post-check. Rooms never wait on each other. Across
processes a partial unique index admits one active session per room; an open
that loses to another process is re-decided against the winner. Summary
generation runs after the lock is released and its failures never escape.

No session state is kept in memory: every decision re-reads status and the
message count from MongoDB.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from line_summarizer.config import settings
from line_summarizer.core import metrics
from line_summarizer.core.exceptions import (
    ConflictError,
    ForbiddenError,
    QuotaExceededError,
    SessionNotActiveError,
    SessionNotFoundError,
    TenantNotFoundError,
)
from line_summarizer.core.logging_config import get_logger
from line_summarizer.db.mongodb import storage_operation
from line_summarizer.models.chat_session import ChatSession, CloseReason, SessionStatus
from line_summarizer.models.message import Message, MessageDirection, MessageType
from line_summarizer.models.organization import Organization
from line_summarizer.models.room import Room
from line_summarizer.models.summary import Summary
from line_summarizer.services.summary_service import SummaryService

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionLimits:
    max_messages: int
    timeout_hours: float

    @classmethod
    def from_settings(cls) -> "SessionLimits":
        return cls(
            max_messages=settings.SESSION_MAX_MESSAGES,
            timeout_hours=settings.SESSION_TIMEOUT_HOURS,
        )

    def for_organization(self, organization: Optional[Organization]) -> "SessionLimits":
        """Apply per-organization overrides on top of these limits."""
        if organization is None:
            return self
        prefs = organization.preferences
        return SessionLimits(
            max_messages=prefs.session_max_messages or self.max_messages,
            timeout_hours=prefs.session_timeout_hours or self.timeout_hours,
        )


@dataclass
class Sender:
    user_id: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class MessageContent:
    text: str
    message_type: MessageType = MessageType.TEXT
    payload: Dict[str, Any] = field(default_factory=dict)


class RoomLockRegistry:
    """
    One asyncio.Lock per room id, created on demand and dropped when no
    coroutine holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, room_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(room_id, asyncio.Lock())
        self._users[room_id] = self._users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[room_id] -= 1
            if self._users[room_id] == 0:
                del self._users[room_id]
                del self._locks[room_id]

    def __len__(self) -> int:
        return len(self._locks)


class SessionLifecycleManager:

    MAX_DECISION_ATTEMPTS = 3

    def __init__(
        self,
        summary_service: Optional[SummaryService] = None,
        limits: Optional[SessionLimits] = None,
        locks: Optional[RoomLockRegistry] = None,
    ):
        self.summary_service = summary_service or SummaryService()
        self.limits = limits or SessionLimits.from_settings()
        self.locks = locks or RoomLockRegistry()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_active_session(self, room: Room) -> Optional[ChatSession]:
        active = await (
            ChatSession.find(
                ChatSession.room_id == str(room.id),
                ChatSession.status == SessionStatus.ACTIVE,
            )
            .sort(-ChatSession.start_time)
            .to_list()
        )
        if len(active) > 1:
            logger.error(
                "multiple_active_sessions",
                room_id=str(room.id),
                session_ids=[s.session_id for s in active],
            )
        return active[0] if active else None

    async def count_messages(self, session: ChatSession) -> int:
        """Authoritative message count of a session."""
        return await Message.find(Message.session_id == session.session_id).count()

    async def limits_for(self, organization_id: str) -> SessionLimits:
        organization = await Organization.get(PydanticObjectId(organization_id))
        return self.limits.for_organization(organization)

    def evaluate_closure(
        self,
        session: ChatSession,
        message_count: int,
        limits: SessionLimits,
        now: Optional[datetime] = None,
    ) -> Optional[CloseReason]:
        """Which trigger fires for these observations, if any."""
        if message_count >= limits.max_messages:
            return CloseReason.MESSAGE_LIMIT
        now = now or datetime.utcnow()
        if now - session.start_time >= timedelta(hours=limits.timeout_hours):
            return CloseReason.TIMEOUT
        return None

    async def closure_reason(
        self,
        session: ChatSession,
        limits: Optional[SessionLimits] = None,
    ) -> Optional[CloseReason]:
        count = await self.count_messages(session)
        return self.evaluate_closure(session, count, limits or self.limits)

    async def should_close(self, session: ChatSession, limits: Optional[SessionLimits] = None) -> bool:
        """
        True when the session has reached its message ceiling or its age limit.

        Counts Message documents on every call; session.message_count is
        never consulted.
        """
        return await self.closure_reason(session, limits) is not None

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_incoming_message(
        self,
        room: Room,
        sender: Sender,
        content: MessageContent,
        external_message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        direction: MessageDirection = MessageDirection.USER,
    ) -> Tuple[ChatSession, Message]:
        """
        Attach one message to the room's current session.

        Returns the session that now owns the message (newly created after a
        rollover) and the persisted Message. A redelivered external_message_id
        returns the stored pair without any writes.

        Raises:
            TenantNotFoundError: the room's organization no longer exists
            ForbiddenError: the organization is suspended, cancelled or expired
            QuotaExceededError: monthly message quota exhausted
            StorageError: a write failed; nothing after the failing write happened
        """
        start = time.perf_counter()
        closed: List[ChatSession] = []
        room_id = str(room.id)

        try:
            async with self.locks.hold(room_id):
                duplicate = await self._find_redelivery(room_id, external_message_id)
                if duplicate is not None:
                    return duplicate

                organization = await Organization.get(PydanticObjectId(room.organization_id))
                if organization is None:
                    raise TenantNotFoundError(f"Organization {room.organization_id} not found")
                operational, reason = organization.operational_status()
                if not operational:
                    logger.warning(
                        "message_rejected_organization_unavailable",
                        org_id=room.organization_id,
                        room_id=room_id,
                        reason=reason,
                    )
                    raise ForbiddenError(reason)
                if direction == MessageDirection.USER and organization.message_quota_exhausted():
                    logger.error(
                        "message_quota_exceeded",
                        org_id=room.organization_id,
                        room_id=room_id,
                        limit=organization.limits.max_messages_per_month,
                    )
                    raise QuotaExceededError(
                        f"Monthly message limit reached ({organization.limits.max_messages_per_month})"
                    )
                limits = self.limits.for_organization(organization)

                session = await self._current_session(room, limits, closed)

                message = await self._attach(session, room, sender, content, external_message_id, timestamp, direction)

                count = await self.count_messages(session)
                reason = self.evaluate_closure(session, count, limits)
                if reason is not None:
                    if await self._close(session, reason, count):
                        closed.append(session)
                else:
                    await self._refresh_message_count(session, count)

                await self._record_activity(room, organization, message, direction)
        finally:
            metrics.message_attach_duration_seconds.observe(time.perf_counter() - start)

        await self._kickoff_summaries(closed)
        return session, message

    async def _find_redelivery(
        self, room_id: str, external_message_id: Optional[str]
    ) -> Optional[Tuple[ChatSession, Message]]:
        if not external_message_id:
            return None
        existing = await Message.find_one(
            Message.room_id == room_id,
            Message.external_message_id == external_message_id,
        )
        if existing is None:
            return None
        session = await ChatSession.find_one(ChatSession.session_id == existing.session_id)
        if session is None:
            return None
        logger.info(
            "message_redelivery_ignored",
            room_id=room_id,
            external_message_id=external_message_id,
            session_id=existing.session_id,
        )
        return session, existing

    async def _settle_active_session(
        self,
        room: Room,
        limits: SessionLimits,
        closed: List[ChatSession],
    ) -> Optional[ChatSession]:
        """
        Pre-check: return the active session if it may take another message,
        otherwise close it and return None.

        A lost compare-and-set means another writer changed the session; the
        read and the decision are repeated.
        """
        for attempt in range(self.MAX_DECISION_ATTEMPTS):
            session = await self.get_active_session(room)
            if session is None:
                return None

            count = await self.count_messages(session)
            reason = self.evaluate_closure(session, count, limits)
            if reason is None:
                return session

            if await self._close(session, reason, count):
                closed.append(session)
                return None

            metrics.session_conflicts_total.labels(operation="pre_check_close").inc()
            logger.info(
                "session_close_conflict",
                session_id=session.session_id,
                room_id=str(room.id),
                attempt=attempt + 1,
            )

        logger.error("session_decision_retries_exhausted", room_id=str(room.id))
        raise ConflictError("Could not settle the active session for this room")

    async def _current_session(
        self,
        room: Room,
        limits: SessionLimits,
        closed: List[ChatSession],
    ) -> ChatSession:
        """
        The session the next message attaches to: the settled active session,
        or a new one.

        Opening fails when another process opened a session for the room first;
        the active session is then re-read and the decision repeated.
        """
        for attempt in range(self.MAX_DECISION_ATTEMPTS):
            session = await self._settle_active_session(room, limits, closed)
            if session is not None:
                return session

            session = await self._open_session(room)
            if session is not None:
                return session

            metrics.session_conflicts_total.labels(operation="open").inc()
            logger.info("session_open_conflict", room_id=str(room.id), attempt=attempt + 1)

        logger.error("session_decision_retries_exhausted", room_id=str(room.id))
        raise ConflictError("Could not open a session for this room")

    async def _open_session(self, room: Room) -> Optional[ChatSession]:
        """Insert a new active session. None if the room already has one."""
        session = ChatSession(
            organization_id=room.organization_id,
            room_id=str(room.id),
            external_room_id=room.external_room_id,
            room_name=room.name,
            room_kind=room.kind,
            start_time=datetime.utcnow(),
        )
        with storage_operation("insert", "chat_sessions", room_id=str(room.id)):
            try:
                await session.insert()
            except DuplicateKeyError:
                return None
            await Room.find_one(Room.id == room.id).update(
                {"$inc": {"statistics.total_sessions": 1}}
            )

        metrics.sessions_opened_total.inc()
        logger.info(
            "session_opened",
            session_id=session.session_id,
            room_id=str(room.id),
            org_id=room.organization_id,
        )
        return session

    async def _attach(
        self,
        session: ChatSession,
        room: Room,
        sender: Sender,
        content: MessageContent,
        external_message_id: Optional[str],
        timestamp: Optional[datetime],
        direction: MessageDirection,
    ) -> Message:
        message = Message(
            organization_id=room.organization_id,
            room_id=str(room.id),
            session_id=session.session_id,
            direction=direction,
            message_type=content.message_type,
            content=content.text[:10000],
            payload=content.payload,
            external_message_id=external_message_id,
            sender_id=sender.user_id,
            sender_name=sender.display_name,
            timestamp=timestamp or datetime.utcnow(),
        )
        with storage_operation("insert", "messages", session_id=session.session_id):
            await message.insert()

        metrics.messages_attached_total.labels(direction=direction.value).inc()
        logger.debug(
            "message_attached",
            session_id=session.session_id,
            message_id=str(message.id),
            message_type=content.message_type.value,
        )
        return message

    async def _close(self, session: ChatSession, reason: CloseReason, message_count: int) -> bool:
        """Active -> Closed. False if the session was no longer active."""
        with storage_operation("update", "chat_sessions", session_id=session.session_id):
            changed = await session.transition(
                SessionStatus.ACTIVE,
                SessionStatus.CLOSED,
                end_time=datetime.utcnow(),
                close_reason=reason,
                message_count=message_count,
            )
        if changed:
            metrics.sessions_closed_total.labels(reason=reason.value).inc()
            logger.info(
                "session_closed",
                session_id=session.session_id,
                room_id=session.room_id,
                org_id=session.organization_id,
                reason=reason.value,
                message_count=message_count,
            )
        return changed

    async def _refresh_message_count(self, session: ChatSession, count: int) -> None:
        session.message_count = count
        with storage_operation("update", "chat_sessions", session_id=session.session_id):
            await ChatSession.find_one(ChatSession.id == session.id).update(
                {"$set": {"message_count": count, "updated_at": datetime.utcnow()}}
            )

    async def _record_activity(
        self,
        room: Room,
        organization: Organization,
        message: Message,
        direction: MessageDirection,
    ) -> None:
        with storage_operation("update", "rooms", room_id=str(room.id)):
            await Room.find_one(Room.id == room.id).update({
                "$inc": {"statistics.total_messages": 1},
                "$set": {
                    "statistics.last_activity_at": message.timestamp,
                    "updated_at": datetime.utcnow(),
                },
            })
        if direction == MessageDirection.USER:
            with storage_operation("update", "organizations", org_id=str(organization.id)):
                await Organization.find_one(Organization.id == organization.id).update(
                    {"$inc": {"usage.messages_this_month": 1}}
                )

    async def _kickoff_summaries(self, sessions: List[ChatSession]) -> None:
        for session in sessions:
            try:
                await self.summary_service.summarize_session(session)
            except Exception as e:  # the closure is already committed
                logger.error(
                    "summary_kickoff_failed",
                    session_id=session.session_id,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    async def force_close(
        self,
        session: ChatSession,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> ChatSession:
        """
        Close an active session regardless of triggers, then attempt a summary.

        Raises:
            SessionNotFoundError: the session no longer exists
            SessionNotActiveError: the session is already closed
        """
        async with self.locks.hold(session.room_id):
            current = await ChatSession.get(session.id)
            if current is None:
                raise SessionNotFoundError(f"Session {session.session_id} not found")
            if not current.is_active:
                raise SessionNotActiveError(
                    f"Session {current.session_id} is already {current.status.value}"
                )
            count = await self.count_messages(current)
            if not await self._close(current, reason, count):
                raise SessionNotActiveError(f"Session {current.session_id} is no longer active")

        await self._kickoff_summaries([current])
        return current

    async def archive_room(self, room: Room) -> Optional[ChatSession]:
        """Mark the room inactive and force-close its open session, if any."""
        closed: List[ChatSession] = []
        async with self.locks.hold(str(room.id)):
            now = datetime.utcnow()
            with storage_operation("update", "rooms", room_id=str(room.id)):
                await Room.find_one(Room.id == room.id).update(
                    {"$set": {"is_active": False, "archived_at": now, "updated_at": now}}
                )
            room.is_active = False
            room.archived_at = now

            session = await self.get_active_session(room)
            if session is not None:
                count = await self.count_messages(session)
                if await self._close(session, CloseReason.ROOM_ARCHIVED, count):
                    closed.append(session)

        logger.info("room_archived", room_id=str(room.id), org_id=room.organization_id)
        await self._kickoff_summaries(closed)
        return closed[0] if closed else None

    async def reactivate_room(self, room: Room) -> None:
        now = datetime.utcnow()
        with storage_operation("update", "rooms", room_id=str(room.id)):
            await Room.find_one(Room.id == room.id).update(
                {"$set": {"is_active": True, "archived_at": None, "updated_at": now}}
            )
        room.is_active = True
        room.archived_at = None
        logger.info("room_reactivated", room_id=str(room.id), org_id=room.organization_id)

    async def regenerate_summary(self, session: ChatSession) -> Summary:
        """
        Re-run summary generation for a closed session (operator action).

        Raises:
            ConflictError: session still active, or a generation is in flight
            SessionNotFoundError: the session no longer exists
        """
        current = await ChatSession.get(session.id)
        if current is None:
            raise SessionNotFoundError(f"Session {session.session_id} not found")
        if current.status == SessionStatus.ACTIVE:
            raise ConflictError("Session is still active; close it before summarizing")
        if current.status == SessionStatus.SUMMARIZING:
            raise ConflictError("Summary generation already in progress")

        count = await self.count_messages(current)
        if count < self.summary_service.min_messages:
            raise ConflictError(
                f"Session has {count} messages; at least "
                f"{self.summary_service.min_messages} are required for a summary"
            )

        summary = await self.summary_service.summarize_session(current, enforce_plan=False)
        if summary is None:
            raise ConflictError("Summary generation could not be started")
        session.status = current.status
        session.summary_id = current.summary_id
        return summary

    async def close_expired_sessions(self) -> int:
        """
        Close every active session whose trigger already fired without waiting
        for another message. Returns the number of sessions closed.
        """
        candidates = await ChatSession.find(ChatSession.status == SessionStatus.ACTIVE).to_list()
        limits_cache: Dict[str, SessionLimits] = {}
        closed: List[ChatSession] = []

        for candidate in candidates:
            org_id = candidate.organization_id
            if org_id not in limits_cache:
                limits_cache[org_id] = await self.limits_for(org_id)
            limits = limits_cache[org_id]

            async with self.locks.hold(candidate.room_id):
                current = await ChatSession.get(candidate.id)
                if current is None or not current.is_active:
                    continue
                count = await self.count_messages(current)
                if self.evaluate_closure(current, count, limits) is None:
                    continue
                if await self._close(current, CloseReason.EXPIRED, count):
                    closed.append(current)

        if closed:
            logger.info("expired_sessions_closed", count=len(closed))
        await self._kickoff_summaries(closed)
        return len(closed)


_session_manager: Optional[SessionLifecycleManager] = None


def get_session_manager() -> SessionLifecycleManager:
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionLifecycleManager()
    return _session_manager
