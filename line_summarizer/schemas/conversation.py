from pydantic import BaseModel, Field, field_validator, ConfigDict
from datetime import datetime
from typing import Any, Dict, List, Optional
import bleach

from line_summarizer.models.chat_session import ChatSession
from line_summarizer.models.message import Message
from line_summarizer.models.room import Room, RoomStatistics
from line_summarizer.models.summary import Summary, SummaryAnalysis, SummaryMetadata


def _clean(value: str) -> str:
    return bleach.clean(value, tags=[], strip=True).strip()


class RoomResponse(BaseModel):
    id: str
    organization_id: str
    external_room_id: str
    name: str
    kind: str
    is_active: bool
    archived_at: Optional[datetime] = None
    statistics: RoomStatistics
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, room: Room) -> "RoomResponse":
        return cls(
            id=str(room.id),
            organization_id=room.organization_id,
            external_room_id=room.external_room_id,
            name=room.name,
            kind=room.kind.value,
            is_active=room.is_active,
            archived_at=room.archived_at,
            statistics=room.statistics,
            created_at=room.created_at,
            updated_at=room.updated_at,
        )


class RoomListResponse(BaseModel):
    rooms: List[RoomResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class RoomUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)

    @field_validator("name")
    @classmethod
    def sanitize_name(cls, v: str) -> str:
        cleaned = _clean(v)
        if not cleaned:
            raise ValueError("name must not be empty")
        return cleaned


class RoomArchiveResponse(BaseModel):
    room: RoomResponse
    closed_session_id: Optional[str] = None


class SessionResponse(BaseModel):
    """message_count is a display value; it is not used for lifecycle decisions."""
    id: str
    session_id: str
    organization_id: str
    room_id: str
    room_name: str
    room_kind: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    close_reason: Optional[str] = None
    message_count: int
    summary_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, session: ChatSession) -> "SessionResponse":
        return cls(
            id=str(session.id),
            session_id=session.session_id,
            organization_id=session.organization_id,
            room_id=session.room_id,
            room_name=session.room_name,
            room_kind=session.room_kind.value,
            status=session.status.value,
            start_time=session.start_time,
            end_time=session.end_time,
            close_reason=session.close_reason.value if session.close_reason else None,
            message_count=session.message_count,
            summary_id=session.summary_id,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class SessionStatsResponse(BaseModel):
    total_sessions: int
    by_status: Dict[str, int]
    total_messages: int
    total_summaries: int
    average_messages_per_closed_session: float


class MessageResponse(BaseModel):
    id: str
    session_id: str
    room_id: str
    direction: str
    message_type: str
    content: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, message: Message) -> "MessageResponse":
        return cls(
            id=str(message.id),
            session_id=message.session_id,
            room_id=message.room_id,
            direction=message.direction.value,
            message_type=message.message_type.value,
            content=message.content,
            payload=message.payload,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            timestamp=message.timestamp,
        )


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class SummaryResponse(BaseModel):
    id: str
    session_id: str
    room_id: str
    content: str
    key_topics: List[str]
    analysis: SummaryAnalysis
    metadata: SummaryMetadata
    status: str
    error_message: Optional[str] = None
    edited_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, summary: Summary) -> "SummaryResponse":
        return cls(
            id=str(summary.id),
            session_id=summary.session_id,
            room_id=summary.room_id,
            content=summary.content,
            key_topics=summary.key_topics,
            analysis=summary.analysis,
            metadata=summary.metadata,
            status=summary.status.value,
            error_message=summary.error_message,
            edited_by=summary.edited_by,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
        )


class SummaryListResponse(BaseModel):
    summaries: List[SummaryResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class SummaryUpdate(BaseModel):
    """Operator edit. HTML is stripped from every field."""
    content: Optional[str] = Field(default=None, min_length=1, max_length=20000)
    key_topics: Optional[List[str]] = Field(default=None, max_length=20)

    @field_validator("content")
    @classmethod
    def sanitize_content(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v) if v is not None else None

    @field_validator("key_topics")
    @classmethod
    def sanitize_topics(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        return [topic for topic in (_clean(t)[:100] for t in v) if topic]
