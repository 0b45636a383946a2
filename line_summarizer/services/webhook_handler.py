"""
WebhookHandler - turns verified LINE webhook events into domain operations.

Per event:
1. Archive the raw event (best-effort)
2. Route it to an organization:
   - an existing Room with the same LINE id decides the tenant
   - otherwise DEFAULT_ORGANIZATION_SLUG, when configured
   - otherwise the event is skipped (room_not_linked)
3. Dispatch by type: message -> Session Lifecycle Manager, join/follow ->
   reactivate, leave/unfollow -> archive, everything else -> log only

A text message consisting of an organization's activation code (ORG-XXXX-XXXX)
in a group or multi-user room binds the room to that organization instead of
being recorded.

Events are processed in delivery order and independently: one failing event
is logged, counted and marked on its archive record, and processing moves on.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from line_summarizer.config import settings
from line_summarizer.core import metrics
from line_summarizer.core.cache import cache
from line_summarizer.core.exceptions import AppError
from line_summarizer.core.logging_config import get_logger
from line_summarizer.models.line_event_raw import LineEventRaw
from line_summarizer.models.message import MessageDirection, MessageType
from line_summarizer.models.organization import Organization
from line_summarizer.models.room import Room, RoomKind
from line_summarizer.schemas.webhook import LineEvent, LineSource, WebhookEnvelope
from line_summarizer.services.audit_service import AuditRecorder, get_audit_recorder
from line_summarizer.services.line_client import LineClient, get_line_client
from line_summarizer.services.organization_service import OrganizationService, get_organization_service
from line_summarizer.services.room_resolver import RoomResolver, fallback_room_name, get_room_resolver
from line_summarizer.services.session_manager import (
    MessageContent,
    Sender,
    SessionLifecycleManager,
    get_session_manager,
)

logger = get_logger(__name__)

ACTIVATION_CODE_PATTERN = re.compile(r"^ORG-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}$")
SENDER_NAME_CACHE_TTL = 3600

ACTIVATION_REPLIES = {
    "linked": "This chat is now connected to {org}. Conversations will be summarized automatically.",
    "already_linked": "This chat is already connected to {org}.",
    "unknown": "Activation code not recognized. Please check the code and try again.",
    "refused": "This chat is already connected to another organization.",
    "unavailable": "This organization cannot accept new chats right now.",
}


@dataclass
class WebhookResult:
    received: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0


def describe_message(message: Dict[str, Any]) -> MessageContent:
    """Readable content plus raw payload for one LINE message object."""
    kind = message.get("type", "other")

    if kind == "text":
        return MessageContent(text=message.get("text", ""), message_type=MessageType.TEXT)
    if kind == "sticker":
        text = f"[sticker {message.get('packageId', '?')}:{message.get('stickerId', '?')}]"
    elif kind == "file":
        text = f"[file {message.get('fileName', 'unnamed')}]"
    elif kind == "location":
        place = message.get("address") or message.get("title") or ""
        text = f"[location] {place}".strip()
    elif kind in ("image", "video", "audio"):
        text = f"[{kind}]"
    else:
        return MessageContent(text=f"[{kind}]", message_type=MessageType.OTHER, payload=message)

    return MessageContent(text=text, message_type=MessageType(kind), payload=message)


def event_timestamp(event: LineEvent) -> datetime:
    if not event.timestamp:
        return datetime.utcnow()
    return datetime.utcfromtimestamp(event.timestamp / 1000)


class WebhookHandler:

    def __init__(
        self,
        session_manager: Optional[SessionLifecycleManager] = None,
        room_resolver: Optional[RoomResolver] = None,
        line_client: Optional[LineClient] = None,
        organization_service: Optional[OrganizationService] = None,
        audit: Optional[AuditRecorder] = None,
        default_organization_slug: Optional[str] = None,
    ):
        self.session_manager = session_manager or get_session_manager()
        self.room_resolver = room_resolver or get_room_resolver()
        self.line_client = line_client or get_line_client()
        self.organization_service = organization_service or get_organization_service()
        self.audit = audit or get_audit_recorder()
        self.default_organization_slug = (
            settings.DEFAULT_ORGANIZATION_SLUG
            if default_organization_slug is None
            else default_organization_slug
        )

    async def handle_envelope(self, envelope: WebhookEnvelope) -> WebhookResult:
        result = WebhookResult(received=len(envelope.events))
        for raw_event in envelope.events:
            outcome = await self._handle_isolated(raw_event, envelope.destination)
            if outcome == "processed":
                result.processed += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            "webhook_processed",
            destination=envelope.destination,
            received=result.received,
            processed=result.processed,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def _handle_isolated(self, raw_event: Dict[str, Any], destination: Optional[str]) -> str:
        event_type = str(raw_event.get("type", "unknown"))
        metrics.webhook_events_total.labels(event_type=event_type).inc()
        archive = await self._archive(raw_event, destination)

        error: Optional[str] = None
        try:
            event = LineEvent.model_validate(raw_event)
            outcome = await self.process_event(event)
        except ValidationError as e:
            outcome, error = "failed", f"invalid event: {e.error_count()} errors"
            logger.warning("webhook_event_invalid", event_type=event_type, error_count=e.error_count())
        except AppError as e:
            outcome, error = "failed", str(e)
            logger.error(
                "webhook_event_failed",
                event_type=event_type,
                error_code=e.code,
                error=e.message,
            )
        except Exception as e:  # one event never aborts its siblings
            outcome, error = "failed", f"{type(e).__name__}: {e}"
            logger.error(
                "webhook_event_failed",
                event_type=event_type,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )

        if error is not None:
            metrics.webhook_event_errors_total.labels(
                event_type=event_type,
                error_type=error.split(":", 1)[0],
            ).inc()
        await self._mark_archived(archive, error)
        return outcome

    async def _archive(self, raw_event: Dict[str, Any], destination: Optional[str]) -> Optional[LineEventRaw]:
        source = raw_event.get("source") or {}
        record = LineEventRaw(
            destination=destination,
            event_type=str(raw_event.get("type", "unknown")),
            webhook_event_id=raw_event.get("webhookEventId"),
            external_room_id=source.get("groupId") or source.get("roomId") or source.get("userId"),
            event=raw_event,
        )
        try:
            await record.insert()
        except PyMongoError as e:
            logger.error("raw_event_archive_failed", event_type=record.event_type, error=str(e))
            return None
        return record

    async def _mark_archived(self, record: Optional[LineEventRaw], error: Optional[str]) -> None:
        if record is None:
            return
        try:
            await LineEventRaw.find_one(LineEventRaw.id == record.id).update({
                "$set": {
                    "processed": error is None,
                    "error": error,
                    "processed_at": datetime.utcnow(),
                }
            })
        except PyMongoError as e:
            logger.error("raw_event_archive_update_failed", raw_event_id=str(record.id), error=str(e))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def process_event(self, event: LineEvent) -> str:
        """Returns "processed" or "skipped"; raises on failure."""
        source = event.source
        if source is None or not source.external_room_id:
            logger.warning("webhook_event_without_source", event_type=event.type)
            return "skipped"

        if event.mode == "standby":
            logger.debug("webhook_event_standby", event_type=event.type)
            return "skipped"

        external_room_id = source.external_room_id
        existing = await self.room_resolver.find_by_external_id(external_room_id)

        if event.type == "message" and source.is_multi_user:
            code = self._activation_code(event)
            if code is not None:
                await self._handle_activation(event, source, code, existing)
                return "processed"

        if existing is not None:
            organization_id = existing.organization_id
        else:
            organization = await self._default_organization()
            if organization is None:
                logger.info(
                    "room_not_linked",
                    event_type=event.type,
                    source_type=source.type,
                    external_room_id=external_room_id,
                )
                return "skipped"
            organization_id = str(organization.id)

        if event.type == "message":
            return await self._handle_message(event, source, organization_id, existing)
        if event.type in ("join", "follow"):
            return await self._handle_join(event, source, organization_id, existing)
        if event.type in ("leave", "unfollow"):
            return await self._handle_leave(event, existing)

        logger.info(
            "webhook_event_recorded",
            event_type=event.type,
            external_room_id=external_room_id,
            org_id=organization_id,
        )
        return "processed"

    async def _default_organization(self) -> Optional[Organization]:
        if not self.default_organization_slug:
            return None
        organization = await self.organization_service.get_by_slug(self.default_organization_slug)
        if organization is None:
            logger.warning("default_organization_missing", slug=self.default_organization_slug)
        return organization

    # ------------------------------------------------------------------
    # Rooms and names
    # ------------------------------------------------------------------

    async def _room_name(self, source: LineSource) -> Tuple[str, bool]:
        """Best display name for the source's room and whether it is a placeholder."""
        name: Optional[str] = None
        if source.type == "group":
            name = await self.line_client.get_group_summary(source.group_id)
        elif source.type == "user":
            profile = await self.line_client.get_user_profile(source.user_id)
            name = profile.display_name if profile else None

        if name:
            return name, False
        return fallback_room_name(source.type, source.external_room_id), True

    async def _resolve(
        self,
        source: LineSource,
        organization_id: str,
        existing: Optional[Room],
    ) -> Room:
        kind = RoomKind.GROUP if source.is_multi_user else RoomKind.INDIVIDUAL
        if existing is not None and existing.organization_id == organization_id and not existing.name_is_fallback:
            return existing
        name, is_fallback = await self._room_name(source)
        return await self.room_resolver.resolve_room(
            organization_id,
            source.external_room_id,
            name,
            kind,
            name_is_fallback=is_fallback,
        )

    async def _sender_name(self, source: LineSource) -> Optional[str]:
        if not source.user_id:
            return None

        cache_key = f"line:profile:{source.external_room_id}:{source.user_id}"
        cached = await cache.get(cache_key)
        if cached:
            return cached

        if source.type == "group":
            profile = await self.line_client.get_group_member_profile(source.group_id, source.user_id)
        elif source.type == "room":
            profile = await self.line_client.get_room_member_profile(source.room_id, source.user_id)
        else:
            profile = await self.line_client.get_user_profile(source.user_id)

        if profile is None:
            return None
        await cache.set(cache_key, profile.display_name, ttl=SENDER_NAME_CACHE_TTL)
        return profile.display_name

    # ------------------------------------------------------------------
    # Event types
    # ------------------------------------------------------------------

    async def _handle_message(
        self,
        event: LineEvent,
        source: LineSource,
        organization_id: str,
        existing: Optional[Room],
    ) -> str:
        if not event.message:
            logger.warning("message_event_without_message", external_room_id=source.external_room_id)
            return "skipped"

        room = await self._resolve(source, organization_id, existing)
        if not room.is_active:
            logger.info("message_for_archived_room", room_id=str(room.id), org_id=room.organization_id)
            return "skipped"

        sender = Sender(user_id=source.user_id, display_name=await self._sender_name(source))
        session, message = await self.session_manager.handle_incoming_message(
            room,
            sender,
            describe_message(event.message),
            external_message_id=event.message.get("id"),
            timestamp=event_timestamp(event),
        )
        logger.info(
            "line_message_recorded",
            room_id=str(room.id),
            session_id=session.session_id,
            message_id=str(message.id),
            message_type=message.message_type.value,
        )
        return "processed"

    async def _handle_join(
        self,
        event: LineEvent,
        source: LineSource,
        organization_id: str,
        existing: Optional[Room],
    ) -> str:
        room = await self._resolve(source, organization_id, existing)
        if not room.is_active:
            await self.session_manager.reactivate_room(room)
        logger.info("room_joined", event_type=event.type, room_id=str(room.id), org_id=room.organization_id)
        return "processed"

    async def _handle_leave(self, event: LineEvent, existing: Optional[Room]) -> str:
        if existing is None or not existing.is_active:
            return "skipped"
        closed = await self.session_manager.archive_room(existing)
        logger.info(
            "room_left",
            event_type=event.type,
            room_id=str(existing.id),
            org_id=existing.organization_id,
            closed_session_id=closed.session_id if closed else None,
        )
        return "processed"

    # ------------------------------------------------------------------
    # Activation codes
    # ------------------------------------------------------------------

    @staticmethod
    def _activation_code(event: LineEvent) -> Optional[str]:
        if not event.message or event.message.get("type") != "text":
            return None
        text = (event.message.get("text") or "").strip().upper()
        return text if ACTIVATION_CODE_PATTERN.match(text) else None

    async def _handle_activation(
        self,
        event: LineEvent,
        source: LineSource,
        code: str,
        existing: Optional[Room],
    ) -> None:
        organization = await self.organization_service.get_by_activation_code(code)
        if organization is None:
            logger.warning("activation_code_unknown", external_room_id=source.external_room_id)
            await self._reply(event, ACTIVATION_REPLIES["unknown"])
            return

        organization_id = str(organization.id)
        if existing is not None and existing.organization_id != organization_id:
            logger.warning(
                "activation_code_refused",
                external_room_id=source.external_room_id,
                bound_org_id=existing.organization_id,
                requested_org_id=organization_id,
                security_violation=True,
            )
            await self._reply(event, ACTIVATION_REPLIES["refused"])
            return

        operational, reason = organization.operational_status()
        if not operational:
            logger.warning("activation_code_org_unavailable", org_id=organization_id, reason=reason)
            await self._reply(event, ACTIVATION_REPLIES["unavailable"])
            return

        if existing is not None:
            if not existing.is_active:
                await self.session_manager.reactivate_room(existing)
            await self._reply(event, ACTIVATION_REPLIES["already_linked"].format(org=organization.name))
            return

        room = await self._resolve(source, organization_id, None)
        reply = ACTIVATION_REPLIES["linked"].format(org=organization.name)
        await self._reply(event, reply)

        logger.info("room_linked", room_id=str(room.id), org_id=organization_id, external_room_id=source.external_room_id)
        await self.audit.log_success(
            "room:link",
            organization_id=organization_id,
            resource_type="Room",
            resource_id=str(room.id),
            description=f"Room {room.name} linked via activation code",
            metadata={"external_room_id": source.external_room_id, "line_user_id": source.user_id},
        )
        await self.session_manager.handle_incoming_message(
            room,
            Sender(display_name="Bot"),
            MessageContent(text=reply),
            timestamp=event_timestamp(event),
            direction=MessageDirection.BOT,
        )

    async def _reply(self, event: LineEvent, text: str) -> None:
        if event.reply_token:
            await self.line_client.reply_message(event.reply_token, [text])


_webhook_handler: Optional[WebhookHandler] = None


def get_webhook_handler() -> WebhookHandler:
    global _webhook_handler
    if _webhook_handler is None:
        _webhook_handler = WebhookHandler()
    return _webhook_handler
