"""
Pytest configuration and shared fixtures.

This file provides reusable fixtures including:
- An isolated in-memory MongoDB (mongomock-motor) with Beanie initialized per test
- Organizations, a room and one member per role
- Session handling wired to a scripted summary generator
- A mocked LINE client
- An HTTP client for the app with service dependencies overridden
"""

import uuid
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from beanie import init_beanie
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from line_summarizer.core.permissions import Role
from line_summarizer.core.rate_limit import limiter
from line_summarizer.db.mongodb import DOCUMENT_MODELS
from line_summarizer.dependencies import get_channel_secret
from line_summarizer.main import app
from line_summarizer.models.organization import Organization
from line_summarizer.models.room import Room
from line_summarizer.services.automation_forwarder import AutomationForwarder, get_automation_forwarder
from line_summarizer.services.conversation_service import ConversationService, get_conversation_service
from line_summarizer.services.line_client import LineClient, LineProfile
from line_summarizer.services.organization_service import OrganizationService
from line_summarizer.services.room_resolver import RoomResolver
from line_summarizer.services.session_manager import SessionLifecycleManager, SessionLimits
from line_summarizer.services.summary_service import SummaryService
from line_summarizer.services.webhook_handler import WebhookHandler, get_webhook_handler
from tests.factories import (
    ACME_ACTIVATION_CODE,
    CHANNEL_SECRET,
    GLOBEX_ACTIVATION_CODE,
    FakeSummaryGenerator,
    add_member,
    create_organization,
    create_room,
)


@pytest.fixture
async def test_db():
    """Fresh in-memory database with every document model initialized."""
    client = AsyncMongoMockClient()
    db = client[f"test_line_summarizer_{uuid.uuid4().hex[:8]}"]
    await init_beanie(database=db, document_models=DOCUMENT_MODELS)
    yield db


@pytest.fixture
async def organization(test_db) -> Organization:
    """Starter-plan tenant (AI summaries enabled)."""
    return await create_organization("Acme Co", "acme", activation_code=ACME_ACTIVATION_CODE)


@pytest.fixture
async def other_organization(test_db) -> Organization:
    return await create_organization("Globex", "globex", activation_code=GLOBEX_ACTIVATION_CODE)


@pytest.fixture
async def room(organization) -> Room:
    return await create_room(organization)


@pytest.fixture
async def members(organization):
    """owner-1, admin-1, member-1 and viewer-1 in the Acme organization, keyed by Role."""
    result = {}
    for role in (Role.OWNER, Role.ADMIN, Role.MEMBER, Role.VIEWER):
        result[role] = await add_member(organization, f"{role.value}-1", role)
    return result


@pytest.fixture
def summary_generator() -> FakeSummaryGenerator:
    return FakeSummaryGenerator()


@pytest.fixture
def session_limits() -> SessionLimits:
    return SessionLimits(max_messages=3, timeout_hours=24)


@pytest.fixture
def session_manager(test_db, summary_generator, session_limits) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        summary_service=SummaryService(generator=summary_generator, min_messages=1),
        limits=session_limits,
    )


@pytest.fixture
def line_client():
    """LINE client double with deterministic profile data."""
    client = AsyncMock(spec=LineClient)
    client.configured = True
    client.get_group_summary.return_value = "Support Group"
    client.get_user_profile.return_value = LineProfile(user_id="U-direct", display_name="Direct Customer")
    client.get_group_member_profile.return_value = LineProfile(user_id="U-member", display_name="Somchai")
    client.get_room_member_profile.return_value = LineProfile(user_id="U-member", display_name="Malee")
    client.reply_message.return_value = True
    return client


@pytest.fixture
def webhook_handler(session_manager, line_client) -> WebhookHandler:
    return WebhookHandler(
        session_manager=session_manager,
        room_resolver=RoomResolver(),
        line_client=line_client,
        organization_service=OrganizationService(),
        default_organization_slug="",
    )


@pytest.fixture
def forwarder() -> AutomationForwarder:
    """Forwarding disabled unless a test overrides this fixture."""
    return AutomationForwarder(url="")


@pytest.fixture
async def test_client(test_db, session_manager, webhook_handler, forwarder) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for the app.

    Session handling uses the scripted generator, the webhook secret is
    CHANNEL_SECRET and rate limits are off.
    """
    app.dependency_overrides[get_conversation_service] = lambda: ConversationService(
        session_manager=session_manager
    )
    app.dependency_overrides[get_webhook_handler] = lambda: webhook_handler
    app.dependency_overrides[get_channel_secret] = lambda: CHANNEL_SECRET
    app.dependency_overrides[get_automation_forwarder] = lambda: forwarder
    limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    limiter.enabled = True
