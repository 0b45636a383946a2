from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class LineSource(BaseModel):
    """Event source: a 1:1 chat (user), a multi-user room (room) or a group."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    group_id: Optional[str] = Field(default=None, alias="groupId")
    room_id: Optional[str] = Field(default=None, alias="roomId")

    @property
    def external_room_id(self) -> Optional[str]:
        if self.type == "group":
            return self.group_id
        if self.type == "room":
            return self.room_id
        return self.user_id

    @property
    def is_multi_user(self) -> bool:
        return self.type in ("group", "room")


class LineEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    timestamp: int = 0  # epoch millis
    source: Optional[LineSource] = None
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    webhook_event_id: Optional[str] = Field(default=None, alias="webhookEventId")
    mode: Optional[str] = None
    message: Optional[Dict[str, Any]] = None
    postback: Optional[Dict[str, Any]] = None


class WebhookEnvelope(BaseModel):
    """
    Top-level webhook body. Events stay raw here and are validated one by
    one, so a malformed event cannot reject its siblings.
    """
    destination: Optional[str] = None
    events: List[Dict[str, Any]]


class WebhookAck(BaseModel):
    status: str = "ok"
    received: int
