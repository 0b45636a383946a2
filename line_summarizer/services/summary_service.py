"""
SummaryService - runs summary generation for a closed session.

Status flow on the session: closed -> summarizing -> closed. The final
transition back to closed happens in a finally block, so a session can never
be left in summarizing and never goes back to active. Generator failures are
stored on the Summary record (status=failed) and are not retried here.
"""

import time
from datetime import datetime
from typing import List, Optional

from beanie import PydanticObjectId

from line_summarizer.config import settings
from line_summarizer.core import metrics
from line_summarizer.core.logging_config import get_logger
from line_summarizer.db.mongodb import storage_operation
from line_summarizer.models.chat_session import ChatSession, SessionStatus
from line_summarizer.models.message import Message
from line_summarizer.models.organization import Organization
from line_summarizer.models.room import Room
from line_summarizer.models.summary import (
    Summary,
    SummaryAnalysis,
    SummaryMetadata,
    SummaryStatus,
)
from line_summarizer.services.summary_generator import (
    SummaryFailure,
    SummaryGenerator,
    get_summary_generator,
)

logger = get_logger(__name__)


class SummaryService:

    def __init__(
        self,
        generator: Optional[SummaryGenerator] = None,
        min_messages: Optional[int] = None,
        max_transcript_messages: Optional[int] = None,
    ):
        self.generator = generator or get_summary_generator()
        self.min_messages = (
            settings.SESSION_MIN_MESSAGES_FOR_SUMMARY if min_messages is None else min_messages
        )
        self.max_transcript_messages = (
            max_transcript_messages or settings.SUMMARY_MAX_TRANSCRIPT_MESSAGES
        )

    async def load_transcript(self, session: ChatSession) -> List[Message]:
        """Newest max_transcript_messages messages of the session, oldest first."""
        newest = await (
            Message.find(Message.session_id == session.session_id)
            .sort(-Message.timestamp)
            .limit(self.max_transcript_messages)
            .to_list()
        )
        newest.reverse()
        return newest

    async def summarize_session(
        self,
        session: ChatSession,
        enforce_plan: bool = True,
    ) -> Optional[Summary]:
        """
        Generate (or regenerate) the summary of a closed session.

        Returns the Summary record (completed or failed), or None when the
        attempt was skipped: too few messages, plan does not allow it, or the
        session is not in closed state.
        """
        message_count = await Message.find(Message.session_id == session.session_id).count()
        if message_count < self.min_messages:
            metrics.summary_generations_total.labels(outcome="skipped").inc()
            logger.info(
                "summary_skipped",
                session_id=session.session_id,
                reason="too_few_messages",
                message_count=message_count,
                min_messages=self.min_messages,
            )
            return None

        organization = await Organization.get(PydanticObjectId(session.organization_id))
        if enforce_plan and organization is not None:
            allowed, reason = organization.summary_allowance()
            if not allowed:
                metrics.summary_generations_total.labels(outcome="skipped").inc()
                logger.info(
                    "summary_skipped",
                    session_id=session.session_id,
                    org_id=session.organization_id,
                    reason=reason,
                )
                return None

        if not await session.transition(SessionStatus.CLOSED, SessionStatus.SUMMARIZING):
            metrics.session_conflicts_total.labels(operation="summarize").inc()
            logger.warning(
                "summary_not_started",
                session_id=session.session_id,
                reason="session_not_closed",
            )
            return None

        summary: Optional[Summary] = None
        try:
            summary = await Summary.find_one(Summary.session_id == session.session_id)
            if summary is None:
                summary = Summary(
                    session_id=session.session_id,
                    organization_id=session.organization_id,
                    room_id=session.room_id,
                )
            summary.status = SummaryStatus.PROCESSING
            summary.metadata.attempts += 1
            summary.updated_at = datetime.utcnow()
            with storage_operation("save", "summaries", session_id=session.session_id):
                if summary.id is None:
                    await summary.insert()
                else:
                    await summary.save()

            await self._generate_into(summary, session, message_count)

            with storage_operation("save", "summaries", session_id=session.session_id):
                await summary.save()

            if summary.status == SummaryStatus.COMPLETED:
                await self._record_usage(session)
        finally:
            fields = {"summary_id": str(summary.id)} if summary is not None and summary.id else {}
            await session.transition(SessionStatus.SUMMARIZING, SessionStatus.CLOSED, **fields)

        return summary

    async def _generate_into(self, summary: Summary, session: ChatSession, message_count: int) -> None:
        transcript = await self.load_transcript(session)

        start = time.perf_counter()
        outcome = await self.generator.generate(session, transcript)
        metrics.summary_generation_duration_seconds.observe(time.perf_counter() - start)

        summary.updated_at = datetime.utcnow()
        if isinstance(outcome, SummaryFailure):
            summary.status = SummaryStatus.FAILED
            summary.error_message = f"{outcome.kind}: {outcome.message}"
            summary.metadata.processing_time_ms = outcome.processing_time_ms
            summary.metadata.message_count = message_count
            metrics.summary_generations_total.labels(outcome="failed").inc()
            logger.error(
                "summary_generation_failed",
                session_id=session.session_id,
                org_id=session.organization_id,
                kind=outcome.kind,
                error=outcome.message,
            )
            return

        summary.status = SummaryStatus.COMPLETED
        summary.error_message = None
        summary.content = outcome.content
        summary.key_topics = outcome.key_topics
        summary.analysis = SummaryAnalysis(**outcome.analysis)
        summary.metadata = SummaryMetadata(
            model=outcome.model,
            tokens_used=outcome.tokens_used,
            processing_time_ms=outcome.processing_time_ms,
            message_count=message_count,
            generated_at=datetime.utcnow(),
            attempts=summary.metadata.attempts,
        )
        metrics.summary_generations_total.labels(outcome="completed").inc()
        logger.info(
            "summary_generated",
            session_id=session.session_id,
            org_id=session.organization_id,
            model=outcome.model,
            processing_time_ms=outcome.processing_time_ms,
            key_topics=len(outcome.key_topics),
        )

    async def _record_usage(self, session: ChatSession) -> None:
        with storage_operation("update", "organizations", org_id=session.organization_id):
            await Organization.find_one(
                Organization.id == PydanticObjectId(session.organization_id)
            ).update({"$inc": {"usage.summaries_this_month": 1}})
        with storage_operation("update", "rooms", room_id=session.room_id):
            await Room.find_one(Room.id == PydanticObjectId(session.room_id)).update(
                {"$inc": {"statistics.total_summaries": 1}}
            )
