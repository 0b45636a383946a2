"""
Tests for the session lifecycle.

Tests cover:
- Opening, attaching and closing on the message ceiling (post-check)
- Rollover of a session that qualified before the message arrived (pre-check)
- Age trigger and its boundary
- Authoritative counting (stored message_count is ignored)
- Concurrent delivery to one room
- Summary failures never affecting the closed session
- Administrative close, archive, regenerate and the expiry sweep
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import DuplicateKeyError

from line_summarizer.core.exceptions import (
    ConflictError,
    ForbiddenError,
    QuotaExceededError,
    SessionNotActiveError,
)
from line_summarizer.models.chat_session import ChatSession, CloseReason, SessionStatus
from line_summarizer.models.message import Message, MessageDirection
from line_summarizer.models.organization import Organization, OrganizationStatus, Plan
from line_summarizer.models.room import Room
from line_summarizer.models.summary import Summary, SummaryStatus
from line_summarizer.services.session_manager import (
    MessageContent,
    RoomLockRegistry,
    Sender,
    SessionLimits,
)
from tests.factories import create_organization, create_room


async def send(manager, room, text, **kwargs):
    return await manager.handle_incoming_message(
        room,
        Sender(user_id="U-member", display_name="Somchai"),
        MessageContent(text=text),
        **kwargs,
    )


async def age_session(session: ChatSession, hours: float):
    await ChatSession.find_one(ChatSession.id == session.id).update(
        {"$set": {"start_time": datetime.utcnow() - timedelta(hours=hours)}}
    )


async def active_sessions(room: Room):
    return await ChatSession.find(
        ChatSession.room_id == str(room.id),
        ChatSession.status == SessionStatus.ACTIVE,
    ).to_list()


class TestAttach:

    @pytest.mark.asyncio
    async def test_first_message_opens_session(self, session_manager, room):
        session, message = await send(session_manager, room, "Hello, is anyone there?")

        assert session.status == SessionStatus.ACTIVE
        assert session.organization_id == room.organization_id
        assert session.room_id == str(room.id)
        assert session.session_id.startswith("sess_")
        assert message.session_id == session.session_id
        assert message.content == "Hello, is anyone there?"
        assert message.sender_name == "Somchai"

        stored_room = await Room.get(room.id)
        assert stored_room.statistics.total_sessions == 1
        assert stored_room.statistics.total_messages == 1

    @pytest.mark.asyncio
    async def test_messages_share_session_below_ceiling(self, session_manager, room):
        first, _ = await send(session_manager, room, "one")
        second, _ = await send(session_manager, room, "two")

        assert second.session_id == first.session_id
        stored = await ChatSession.get(first.id)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.message_count == 2

    @pytest.mark.asyncio
    async def test_user_messages_count_toward_monthly_usage(self, session_manager, organization, room):
        await send(session_manager, room, "one")
        await session_manager.handle_incoming_message(
            room, Sender(display_name="Bot"), MessageContent(text="auto reply"),
            direction=MessageDirection.BOT,
        )

        stored = await Organization.get(organization.id)
        assert stored.usage.messages_this_month == 1

    @pytest.mark.asyncio
    async def test_redelivered_message_is_not_stored_twice(self, session_manager, room):
        session, message = await send(session_manager, room, "hi", external_message_id="468789577898262530")
        again_session, again_message = await send(
            session_manager, room, "hi", external_message_id="468789577898262530"
        )

        assert again_session.session_id == session.session_id
        assert again_message.id == message.id
        assert await Message.find(Message.session_id == session.session_id).count() == 1

    @pytest.mark.asyncio
    async def test_quota_exhausted_rejects_user_messages(self, session_manager, organization, room):
        await Organization.find_one(Organization.id == organization.id).update(
            {"$set": {"usage.messages_this_month": organization.limits.max_messages_per_month}}
        )

        with pytest.raises(QuotaExceededError):
            await send(session_manager, room, "over the limit")

        assert await Message.find(Message.room_id == str(room.id)).count() == 0

    @pytest.mark.asyncio
    async def test_suspended_organization_rejects_messages(self, session_manager, organization, room):
        await Organization.find_one(Organization.id == organization.id).update(
            {"$set": {"status": OrganizationStatus.SUSPENDED.value}}
        )

        with pytest.raises(ForbiddenError) as exc_info:
            await send(session_manager, room, "still there?")

        assert exc_info.value.reason == "Organization is suspended"
        assert await Message.find(Message.room_id == str(room.id)).count() == 0
        assert await active_sessions(room) == []

    @pytest.mark.asyncio
    async def test_expired_plan_rejects_bot_messages(self, session_manager, organization, room):
        await Organization.find_one(Organization.id == organization.id).update(
            {"$set": {"plan_expires_at": datetime.utcnow() - timedelta(days=1)}}
        )

        with pytest.raises(ForbiddenError):
            await send(session_manager, room, "auto reply", direction=MessageDirection.BOT)

        assert await Message.find(Message.room_id == str(room.id)).count() == 0

    @pytest.mark.asyncio
    async def test_rooms_have_independent_sessions(self, session_manager, organization, room):
        other_room = await create_room(organization, external_room_id="C-other-group", name="Sales")

        first, _ = await send(session_manager, room, "support question")
        second, _ = await send(session_manager, other_room, "sales question")

        assert first.session_id != second.session_id
        assert len(await active_sessions(room)) == 1
        assert len(await active_sessions(other_room)) == 1

    @pytest.mark.asyncio
    async def test_locks_are_released_after_use(self, session_manager, room):
        await send(session_manager, room, "one")
        await send(session_manager, room, "two")

        assert len(session_manager.locks) == 0


class TestClosure:

    @pytest.mark.asyncio
    async def test_message_reaching_ceiling_closes_session(self, session_manager, room, summary_generator):
        await send(session_manager, room, "one")
        await send(session_manager, room, "two")
        session, message = await send(session_manager, room, "three")

        assert message.session_id == session.session_id
        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.CLOSED
        assert stored.close_reason == CloseReason.MESSAGE_LIMIT
        assert stored.message_count == 3
        assert stored.end_time is not None
        assert stored.summary_id is not None
        assert await active_sessions(room) == []

        summary = await Summary.find_one(Summary.session_id == session.session_id)
        assert summary.status == SummaryStatus.COMPLETED
        assert summary_generator.calls[0]["contents"] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_max_three_then_fourth_message_starts_new_session(self, session_manager, room):
        results = [await send(session_manager, room, text) for text in ("a", "b", "c", "d")]

        first_id = results[0][0].session_id
        assert [r[1].session_id for r in results[:3]] == [first_id] * 3
        fourth_session, fourth_message = results[3]
        assert fourth_session.session_id != first_id
        assert fourth_message.session_id == fourth_session.session_id

        first = await ChatSession.find_one(ChatSession.session_id == first_id)
        assert first.status == SessionStatus.CLOSED
        assert await Summary.find_one(Summary.session_id == first_id) is not None

        active = await active_sessions(room)
        assert [s.session_id for s in active] == [fourth_session.session_id]
        assert await Message.find(Message.session_id == fourth_session.session_id).count() == 1

    @pytest.mark.asyncio
    async def test_aged_session_rolls_over_before_attach(self, session_manager, room):
        old, _ = await send(session_manager, room, "yesterday")
        await age_session(old, hours=25)

        new, message = await send(session_manager, room, "today")

        assert new.session_id != old.session_id
        assert message.session_id == new.session_id
        stored_old = await ChatSession.get(old.id)
        assert stored_old.status == SessionStatus.CLOSED
        assert stored_old.close_reason == CloseReason.TIMEOUT
        assert await Message.find(Message.session_id == old.session_id).count() == 1

    @pytest.mark.asyncio
    async def test_organization_preferences_override_ceiling(self, session_manager, organization, room):
        await Organization.find_one(Organization.id == organization.id).update(
            {"$set": {"preferences.session_max_messages": 2}}
        )

        await send(session_manager, room, "one")
        session, _ = await send(session_manager, room, "two")

        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.CLOSED
        assert stored.close_reason == CloseReason.MESSAGE_LIMIT

    @pytest.mark.asyncio
    async def test_concurrent_messages_respect_ceiling(self, session_manager, room):
        texts = [f"message {i}" for i in range(7)]
        await asyncio.gather(*(send(session_manager, room, text) for text in texts))

        sessions = await ChatSession.find(ChatSession.room_id == str(room.id)).to_list()
        counts = sorted(
            [await Message.find(Message.session_id == s.session_id).count() for s in sessions],
            reverse=True,
        )
        assert counts == [3, 3, 1]
        assert len(await active_sessions(room)) == 1

        stored = await Message.find(Message.room_id == str(room.id)).to_list()
        assert sorted(m.content for m in stored) == sorted(texts)
        assert len(session_manager.locks) == 0

    @pytest.mark.asyncio
    async def test_settle_gives_up_after_repeated_conflicts(self, session_manager, room):
        session, _ = await send(session_manager, room, "one")
        await age_session(session, hours=30)
        session_manager._close = AsyncMock(return_value=False)

        with pytest.raises(ConflictError):
            await send(session_manager, room, "two")

        assert session_manager._close.await_count == session_manager.MAX_DECISION_ATTEMPTS
        assert await Message.find(Message.room_id == str(room.id)).count() == 1

    @pytest.mark.asyncio
    async def test_second_active_session_is_rejected_by_store(self, room):
        fields = dict(
            organization_id=room.organization_id,
            room_id=str(room.id),
            external_room_id=room.external_room_id,
            room_name=room.name,
            room_kind=room.kind,
        )
        await ChatSession(**fields).insert()

        with pytest.raises(DuplicateKeyError):
            await ChatSession(**fields).insert()

        await ChatSession(**fields, status=SessionStatus.CLOSED).insert()
        assert len(await active_sessions(room)) == 1

    @pytest.mark.asyncio
    async def test_open_lost_to_another_process_joins_winner(self, session_manager, room, monkeypatch):
        winner, _ = await send(session_manager, room, "from another worker")

        original_lookup = session_manager.get_active_session
        calls = {"count": 0}

        async def stale_lookup(target_room):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return await original_lookup(target_room)

        monkeypatch.setattr(session_manager, "get_active_session", stale_lookup)

        session, message = await send(session_manager, room, "second")

        assert session.session_id == winner.session_id
        assert message.session_id == winner.session_id
        assert len(await active_sessions(room)) == 1
        assert await Message.find(Message.session_id == winner.session_id).count() == 2

    @pytest.mark.asyncio
    async def test_open_gives_up_when_room_stays_taken(self, session_manager, room, monkeypatch):
        await send(session_manager, room, "one")

        async def never_found(target_room):
            return None

        monkeypatch.setattr(session_manager, "get_active_session", never_found)

        with pytest.raises(ConflictError):
            await send(session_manager, room, "two")

        assert len(await active_sessions(room)) == 1
        assert await Message.find(Message.room_id == str(room.id)).count() == 1


class TestClosureDecision:

    @pytest.mark.asyncio
    async def test_count_trigger_and_boundary(self, session_manager, room):
        session, _ = await send(session_manager, room, "one")
        limits = SessionLimits(max_messages=3, timeout_hours=24)

        assert session_manager.evaluate_closure(session, 2, limits) is None
        assert session_manager.evaluate_closure(session, 3, limits) == CloseReason.MESSAGE_LIMIT

    @pytest.mark.asyncio
    async def test_age_trigger_is_inclusive(self, session_manager, room):
        session, _ = await send(session_manager, room, "one")
        limits = SessionLimits(max_messages=50, timeout_hours=24)

        just_before = session.start_time + timedelta(hours=24) - timedelta(seconds=1)
        exactly = session.start_time + timedelta(hours=24)

        assert session_manager.evaluate_closure(session, 1, limits, now=just_before) is None
        assert session_manager.evaluate_closure(session, 1, limits, now=exactly) == CloseReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_should_close_counts_messages_not_stored_counter(self, session_manager, room):
        session, _ = await send(session_manager, room, "one")
        await send(session_manager, room, "two")

        session.message_count = 99
        assert await session_manager.should_close(session) is False

        session.message_count = 0
        await Message(
            organization_id=room.organization_id,
            room_id=str(room.id),
            session_id=session.session_id,
            content="inserted out of band",
        ).insert()
        assert await session_manager.should_close(session) is True


class TestSummaryIsolation:

    @pytest.mark.asyncio
    async def test_failed_generation_leaves_closed_session(self, session_manager, room, summary_generator):
        summary_generator.fail_with("timeout", "Summary request timed out after 10.0s")

        for text in ("a", "b"):
            await send(session_manager, room, text)
        session, message = await send(session_manager, room, "c")

        assert message.id is not None
        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.CLOSED
        summary = await Summary.find_one(Summary.session_id == session.session_id)
        assert summary.status == SummaryStatus.FAILED
        assert summary.error_message.startswith("timeout")

    @pytest.mark.asyncio
    async def test_generator_crash_does_not_escape(self, session_manager, room, summary_generator):
        summary_generator.error = RuntimeError("model exploded")

        for text in ("a", "b"):
            await send(session_manager, room, text)
        session, _ = await send(session_manager, room, "c")

        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.CLOSED

        next_session, _ = await send(session_manager, room, "d")
        assert next_session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_free_plan_closes_without_summary(self, session_manager, test_db, summary_generator):
        free = await create_organization("Free Tier", "free-tier", plan=Plan.FREE)
        free_room = await create_room(free, external_room_id="C-free")

        for text in ("a", "b", "c"):
            session, _ = await send(session_manager, free_room, text)

        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.CLOSED
        assert await Summary.find_one(Summary.session_id == session.session_id) is None
        assert summary_generator.calls == []


class TestAdministrativeOperations:

    @pytest.mark.asyncio
    async def test_force_close(self, session_manager, room):
        session, _ = await send(session_manager, room, "please close me")

        closed = await session_manager.force_close(session)

        assert closed.status == SessionStatus.CLOSED
        assert closed.close_reason == CloseReason.MANUAL
        assert closed.summary_id is not None

        with pytest.raises(SessionNotActiveError):
            await session_manager.force_close(session)

    @pytest.mark.asyncio
    async def test_archive_room_closes_open_session(self, session_manager, room):
        session, _ = await send(session_manager, room, "last words")

        closed = await session_manager.archive_room(room)

        assert closed.session_id == session.session_id
        assert closed.close_reason == CloseReason.ROOM_ARCHIVED
        stored_room = await Room.get(room.id)
        assert stored_room.is_active is False
        assert stored_room.archived_at is not None

        await session_manager.reactivate_room(stored_room)
        assert (await Room.get(room.id)).is_active is True

    @pytest.mark.asyncio
    async def test_archive_room_without_session(self, session_manager, room):
        assert await session_manager.archive_room(room) is None

    @pytest.mark.asyncio
    async def test_regenerate_summary_after_failure(self, session_manager, room, summary_generator):
        summary_generator.fail_with()
        session, _ = await send(session_manager, room, "a")
        await session_manager.force_close(session)

        summary_generator.outcome = None
        summary = await session_manager.regenerate_summary(session)

        assert summary.status == SummaryStatus.COMPLETED
        assert summary.metadata.attempts == 2
        assert await Summary.find(Summary.session_id == session.session_id).count() == 1

    @pytest.mark.asyncio
    async def test_regenerate_rejects_active_session(self, session_manager, room):
        session, _ = await send(session_manager, room, "still talking")

        with pytest.raises(ConflictError):
            await session_manager.regenerate_summary(session)

    @pytest.mark.asyncio
    async def test_expiry_sweep_closes_only_qualifying_sessions(self, session_manager, organization, room):
        quiet, _ = await send(session_manager, room, "anyone?")
        await age_session(quiet, hours=48)
        busy_room = await create_room(organization, external_room_id="C-busy")
        busy, _ = await send(session_manager, busy_room, "fresh")

        closed = await session_manager.close_expired_sessions()

        assert closed == 1
        assert (await ChatSession.get(quiet.id)).close_reason == CloseReason.EXPIRED
        assert (await ChatSession.get(busy.id)).status == SessionStatus.ACTIVE


class TestRoomLockRegistry:

    @pytest.mark.asyncio
    async def test_same_room_is_serialized(self):
        locks = RoomLockRegistry()
        order = []

        async def worker(name):
            async with locks.hold("room-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert len(locks) == 0
