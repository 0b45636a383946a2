from beanie import Document
from pydantic import Field
from datetime import datetime
from typing import Any, Dict, Optional


class LineEventRaw(Document):
    """Verbatim archive of every webhook event, for replay and debugging."""
    destination: Optional[str] = None
    event_type: str
    webhook_event_id: Optional[str] = None
    external_room_id: Optional[str] = None
    event: Dict[str, Any]

    processed: bool = False
    error: Optional[str] = None
    received_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None

    class Settings:
        name = "line_events_raw"
        indexes = [
            [("received_at", -1)],
            "webhook_event_id",
            [("processed", 1), ("received_at", -1)],
        ]
