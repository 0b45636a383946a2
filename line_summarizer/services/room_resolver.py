"""
Room Resolver - maps (organization, external LINE room id) to a Room document.

resolve_room() is idempotent: the unique (organization_id, external_room_id)
index collapses concurrent first contacts into one Room, and the loser of a
duplicate-key race re-reads and returns the winner's document.
"""

from datetime import datetime
from typing import Optional

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from line_summarizer.core.exceptions import (
    ForbiddenError,
    QuotaExceededError,
    StorageError,
    TenantNotFoundError,
)
from line_summarizer.core.logging_config import get_logger
from line_summarizer.db.mongodb import storage_operation
from line_summarizer.models.organization import Organization
from line_summarizer.models.room import Room, RoomKind

logger = get_logger(__name__)

FALLBACK_NAME_PREFIXES = {
    "group": "Group Chat",
    "room": "Multi-User Chat",
    "user": "Direct Message",
    "individual": "Direct Message",
}


def fallback_room_name(source_type: str, external_room_id: str) -> str:
    """Placeholder name used until a LINE profile lookup succeeds."""
    prefix = FALLBACK_NAME_PREFIXES.get(source_type, "Chat")
    return f"{prefix} ({external_room_id[:8]})"


class RoomResolver:

    async def _load_organization(self, organization_id: str) -> Organization:
        try:
            object_id = PydanticObjectId(organization_id)
        except (InvalidId, TypeError):
            raise TenantNotFoundError(f"Organization {organization_id} not found")
        organization = await Organization.get(object_id)
        if organization is None:
            raise TenantNotFoundError(f"Organization {organization_id} not found")
        return organization

    async def find_room(self, organization_id: str, external_room_id: str) -> Optional[Room]:
        return await Room.find_one(
            Room.organization_id == organization_id,
            Room.external_room_id == external_room_id,
        )

    async def find_by_external_id(self, external_room_id: str) -> Optional[Room]:
        """Tenant routing: the Room already bound to this LINE id, in any organization."""
        return await Room.find_one(Room.external_room_id == external_room_id)

    async def resolve_room(
        self,
        organization_id: str,
        external_room_id: str,
        display_name_hint: Optional[str],
        room_kind: RoomKind,
        name_is_fallback: bool = False,
    ) -> Room:
        """
        Return the Room for (organization_id, external_room_id), creating it
        on first contact.

        Args:
            display_name_hint: best known name; may itself be a fallback
            name_is_fallback: True if display_name_hint is a generated placeholder

        Raises:
            TenantNotFoundError: unknown organization
            ForbiddenError: organization is not operational (suspended, cancelled, expired)
            QuotaExceededError: organization is at its plan's room limit
            StorageError: insert failed for a reason other than a lost race
        """
        if not external_room_id:
            raise ValueError("external_room_id must be a non-empty string")

        organization = await self._load_organization(organization_id)
        operational, reason = organization.operational_status()
        if not operational:
            logger.warning("room_resolve_rejected", org_id=organization_id, reason=reason)
            raise ForbiddenError(reason)

        room = await self.find_room(organization_id, external_room_id)
        if room is not None:
            await self._maybe_rename(room, display_name_hint, name_is_fallback)
            return room

        if organization.usage.current_groups >= organization.limits.max_groups:
            logger.error(
                "room_limit_reached",
                org_id=organization_id,
                limit=organization.limits.max_groups,
            )
            raise QuotaExceededError(
                f"Room limit reached ({organization.limits.max_groups} on "
                f"{organization.plan.value} plan)"
            )

        room = Room(
            organization_id=organization_id,
            external_room_id=external_room_id,
            name=display_name_hint or fallback_room_name(room_kind.value, external_room_id),
            kind=room_kind,
            name_is_fallback=name_is_fallback or not display_name_hint,
        )
        lost_race = False
        with storage_operation("insert", "rooms", org_id=organization_id):
            try:
                await room.insert()
            except DuplicateKeyError:
                lost_race = True

        if lost_race:
            existing = await self.find_room(organization_id, external_room_id)
            if existing is None:
                raise StorageError(f"Room {external_room_id} collided on insert but cannot be read back")
            logger.info(
                "room_create_race_lost",
                room_id=str(existing.id),
                org_id=organization_id,
                external_room_id=external_room_id,
            )
            return existing

        logger.info(
            "room_created",
            room_id=str(room.id),
            org_id=organization_id,
            external_room_id=external_room_id,
            kind=room_kind.value,
        )
        await Organization.find_one(Organization.id == organization.id).update(
            {"$inc": {"usage.current_groups": 1}}
        )
        return room

    async def _maybe_rename(self, room: Room, name: Optional[str], name_is_fallback: bool) -> None:
        if not name or name_is_fallback or not room.name_is_fallback or name == room.name:
            return
        old_name = room.name
        room.name = name
        room.name_is_fallback = False
        room.updated_at = datetime.utcnow()
        with storage_operation("update", "rooms", room_id=str(room.id)):
            await Room.find_one(Room.id == room.id).update(
                {"$set": {"name": name, "name_is_fallback": False, "updated_at": room.updated_at}}
            )
        logger.info("room_renamed", room_id=str(room.id), old_name=old_name, new_name=name)


_room_resolver: Optional[RoomResolver] = None


def get_room_resolver() -> RoomResolver:
    global _room_resolver
    if _room_resolver is None:
        _room_resolver = RoomResolver()
    return _room_resolver
