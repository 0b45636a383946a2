from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import List, Optional


class SummaryStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SummaryAnalysis(BaseModel):
    sentiment: str = "neutral"
    urgency: str = "low"
    category: str = "general"
    action_items: List[str] = Field(default_factory=list)
    customer_issues: List[str] = Field(default_factory=list)


class SummaryMetadata(BaseModel):
    model: Optional[str] = None
    tokens_used: int = 0
    processing_time_ms: int = 0
    message_count: int = 0
    generated_at: Optional[datetime] = None
    attempts: int = 0


class Summary(Document):
    """
    AI-generated summary of exactly one session.

    Regeneration overwrites content in place; session_id is unique so a
    session never owns two summary records.
    """
    session_id: str
    organization_id: str
    room_id: str

    content: str = ""
    key_topics: List[str] = Field(default_factory=list)
    analysis: SummaryAnalysis = Field(default_factory=SummaryAnalysis)
    metadata: SummaryMetadata = Field(default_factory=SummaryMetadata)

    status: SummaryStatus = SummaryStatus.PROCESSING
    error_message: Optional[str] = None

    edited_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "summaries"
        indexes = [
            IndexModel([("session_id", ASCENDING)], unique=True),
            [("organization_id", 1), ("created_at", -1)],
            "room_id",
        ]
