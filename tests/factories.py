"""
Test data builders shared by the test modules.

- Document factories (organizations, rooms, members)
- A scripted summary generator
- Bearer tokens for dashboard callers
- Signed LINE webhook bodies and events
"""

import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

import jwt

from line_summarizer.config import settings
from line_summarizer.core.permissions import Role
from line_summarizer.core.signature import compute_signature
from line_summarizer.models.organization import Organization, Plan
from line_summarizer.models.organization_member import OrganizationMember
from line_summarizer.models.room import Room, RoomKind
from line_summarizer.services.summary_generator import SummaryFailure, SummaryResult

CHANNEL_SECRET = "test-channel-secret"
ACME_ACTIVATION_CODE = "ORG-ACME-2345"
GLOBEX_ACTIVATION_CODE = "ORG-GLBX-6789"
GROUP_ID = "C1234567890abcdef"


class FakeSummaryGenerator:
    """
    Scripted stand-in for the Gemini adapter.

    outcome: SummaryResult or SummaryFailure to return (a default result otherwise)
    error:   exception to raise instead of returning
    """

    def __init__(self, outcome=None, error: Optional[Exception] = None):
        self.outcome = outcome
        self.error = error
        self.calls = []

    async def generate(self, session, transcript):
        self.calls.append({
            "session_id": session.session_id,
            "contents": [m.content for m in transcript],
        })
        if self.error is not None:
            raise self.error
        if self.outcome is not None:
            return self.outcome
        return SummaryResult(
            content=f"Customer conversation with {len(transcript)} messages",
            key_topics=["delivery"],
            analysis={"sentiment": "neutral", "urgency": "medium", "category": "support"},
            model="fake-model",
            tokens_used=42,
            processing_time_ms=7,
        )

    def fail_with(self, kind: str = "upstream_error", message: str = "Gemini returned HTTP 500"):
        self.outcome = SummaryFailure(kind, message)


# ----------------------------------------------------------------------
# Documents
# ----------------------------------------------------------------------

async def create_organization(
    name: str,
    slug: str,
    plan: Plan = Plan.STARTER,
    activation_code: Optional[str] = None,
) -> Organization:
    organization = Organization(name=name, slug=slug, activation_code=activation_code)
    organization.apply_plan(plan)
    await organization.insert()
    return organization


async def create_room(
    organization: Organization,
    external_room_id: str = GROUP_ID,
    name: str = "Support Group",
    kind: RoomKind = RoomKind.GROUP,
) -> Room:
    room = Room(
        organization_id=str(organization.id),
        external_room_id=external_room_id,
        name=name,
        kind=kind,
    )
    await room.insert()
    await Organization.find_one(Organization.id == organization.id).update(
        {"$inc": {"usage.current_groups": 1}}
    )
    return room


async def add_member(organization: Organization, user_id: str, role: Role) -> OrganizationMember:
    member = OrganizationMember(
        organization_id=str(organization.id),
        user_id=user_id,
        role=role,
        email=f"{user_id}@example.com",
    )
    await member.insert()
    await Organization.find_one(Organization.id == organization.id).update(
        {"$inc": {"usage.current_users": 1}}
    )
    return member


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------

def make_token(user_id: str, **claims) -> str:
    payload = {
        "sub": user_id,
        "type": "access",
        "email": f"{user_id}@example.com",
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user_id: str, **claims) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}


def superadmin_headers() -> dict:
    return auth_headers("platform-admin", platform_role="super_admin")


# ----------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------

def signed_body(payload: dict, secret: str = CHANNEL_SECRET):
    """Raw JSON body plus the matching X-Line-Signature header."""
    body = json.dumps(payload).encode("utf-8")
    return body, {"X-Line-Signature": compute_signature(body, secret), "Content-Type": "application/json"}


def text_event(
    text: str,
    chat_id: str = GROUP_ID,
    user_id: str = "U-member",
    message_id: Optional[str] = None,
    reply_token: str = "reply-token-1",
    source_type: str = "group",
) -> dict:
    """A LINE text message event; chat_id is the groupId or roomId (ignored for 1:1 chats)."""
    source = {"type": source_type, "userId": user_id}
    if source_type == "group":
        source["groupId"] = chat_id
    elif source_type == "room":
        source["roomId"] = chat_id
    return {
        "type": "message",
        "mode": "active",
        "timestamp": int(time.time() * 1000),
        "webhookEventId": uuid.uuid4().hex,
        "replyToken": reply_token,
        "source": source,
        "message": {"id": message_id or uuid.uuid4().hex[:18], "type": "text", "text": text},
    }


def group_event(event_type: str, chat_id: str = GROUP_ID) -> dict:
    """join / leave / memberJoined style event without a message."""
    return {
        "type": event_type,
        "mode": "active",
        "timestamp": int(time.time() * 1000),
        "webhookEventId": uuid.uuid4().hex,
        "source": {"type": "group", "groupId": chat_id},
    }
