"""
Tests for summary generation on closed sessions.

Tests cover:
- Skips (too few messages, plan without AI summaries, session not closed)
- Completed and failed summaries
- Usage counters
- The session always ending in closed state
"""

from datetime import datetime, timedelta

import pytest

from line_summarizer.models.chat_session import ChatSession, CloseReason, SessionStatus
from line_summarizer.models.message import Message
from line_summarizer.models.organization import Organization, Plan
from line_summarizer.models.room import Room
from line_summarizer.models.summary import Summary, SummaryStatus
from line_summarizer.services.summary_service import SummaryService
from tests.factories import FakeSummaryGenerator, create_organization, create_room


async def closed_session(room: Room, texts, status: SessionStatus = SessionStatus.CLOSED) -> ChatSession:
    session = ChatSession(
        organization_id=room.organization_id,
        room_id=str(room.id),
        external_room_id=room.external_room_id,
        room_name=room.name,
        room_kind=room.kind,
        status=status,
        end_time=datetime.utcnow() if status == SessionStatus.CLOSED else None,
        close_reason=CloseReason.MANUAL if status == SessionStatus.CLOSED else None,
        message_count=len(texts),
    )
    await session.insert()
    start = datetime.utcnow() - timedelta(minutes=len(texts))
    for index, text in enumerate(texts):
        await Message(
            organization_id=room.organization_id,
            room_id=str(room.id),
            session_id=session.session_id,
            content=text,
            sender_id="U-member",
            sender_name="Somchai",
            timestamp=start + timedelta(minutes=index),
        ).insert()
    return session


class TestSummarizeSession:

    @pytest.mark.asyncio
    async def test_completed_summary(self, organization, room):
        generator = FakeSummaryGenerator()
        service = SummaryService(generator=generator, min_messages=2)
        session = await closed_session(room, ["where is my order", "it shipped", "thanks"])

        summary = await service.summarize_session(session)

        assert summary.status == SummaryStatus.COMPLETED
        assert summary.content == "Customer conversation with 3 messages"
        assert summary.metadata.message_count == 3
        assert summary.metadata.attempts == 1
        assert summary.metadata.model == "fake-model"
        assert generator.calls[0]["contents"] == ["where is my order", "it shipped", "thanks"]

        stored_session = await ChatSession.get(session.id)
        assert stored_session.status == SessionStatus.CLOSED
        assert stored_session.summary_id == str(summary.id)

        stored_org = await Organization.get(organization.id)
        assert stored_org.usage.summaries_this_month == 1
        stored_room = await Room.get(room.id)
        assert stored_room.statistics.total_summaries == 1

    @pytest.mark.asyncio
    async def test_transcript_is_capped_to_newest_messages(self, room):
        generator = FakeSummaryGenerator()
        service = SummaryService(generator=generator, min_messages=1, max_transcript_messages=2)
        session = await closed_session(room, ["first", "second", "third"])

        await service.summarize_session(session)

        assert generator.calls[0]["contents"] == ["second", "third"]

    @pytest.mark.asyncio
    async def test_too_few_messages_skipped(self, room):
        generator = FakeSummaryGenerator()
        service = SummaryService(generator=generator, min_messages=3)
        session = await closed_session(room, ["hi"])

        assert await service.summarize_session(session) is None

        assert generator.calls == []
        assert await Summary.find_one(Summary.session_id == session.session_id) is None

    @pytest.mark.asyncio
    async def test_free_plan_skipped(self, test_db):
        organization = await create_organization("Free Co", "free-co", plan=Plan.FREE)
        room = await create_room(organization)
        generator = FakeSummaryGenerator()
        session = await closed_session(room, ["hi", "hello"])

        assert await SummaryService(generator=generator, min_messages=1).summarize_session(session) is None
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_free_plan_allowed_without_plan_enforcement(self, test_db):
        organization = await create_organization("Free Co", "free-co", plan=Plan.FREE)
        room = await create_room(organization)
        session = await closed_session(room, ["hi", "hello"])

        summary = await SummaryService(
            generator=FakeSummaryGenerator(), min_messages=1
        ).summarize_session(session, enforce_plan=False)

        assert summary.status == SummaryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_active_session_not_summarized(self, room):
        generator = FakeSummaryGenerator()
        session = await closed_session(room, ["hi"], status=SessionStatus.ACTIVE)

        assert await SummaryService(generator=generator, min_messages=1).summarize_session(session) is None

        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.ACTIVE
        assert generator.calls == []


class TestSummaryFailures:

    @pytest.mark.asyncio
    async def test_generator_failure_is_stored(self, organization, room):
        generator = FakeSummaryGenerator()
        generator.fail_with("timeout", "Summary request timed out after 30s")
        session = await closed_session(room, ["hi", "hello"])

        summary = await SummaryService(generator=generator, min_messages=1).summarize_session(session)

        assert summary.status == SummaryStatus.FAILED
        assert summary.error_message == "timeout: Summary request timed out after 30s"
        stored_session = await ChatSession.get(session.id)
        assert stored_session.status == SessionStatus.CLOSED
        stored_org = await Organization.get(organization.id)
        assert stored_org.usage.summaries_this_month == 0

    @pytest.mark.asyncio
    async def test_generator_crash_leaves_session_closed(self, room):
        generator = FakeSummaryGenerator(error=RuntimeError("boom"))
        session = await closed_session(room, ["hi", "hello"])

        with pytest.raises(RuntimeError):
            await SummaryService(generator=generator, min_messages=1).summarize_session(session)

        stored = await ChatSession.get(session.id)
        assert stored.status == SessionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_retry_overwrites_failed_summary(self, room):
        generator = FakeSummaryGenerator()
        generator.fail_with()
        service = SummaryService(generator=generator, min_messages=1)
        session = await closed_session(room, ["hi", "hello"])
        failed = await service.summarize_session(session)

        generator.outcome = None
        retried = await service.summarize_session(session)

        assert retried.id == failed.id
        assert retried.status == SummaryStatus.COMPLETED
        assert retried.error_message is None
        assert retried.metadata.attempts == 2
        assert await Summary.find(Summary.session_id == session.session_id).count() == 1
