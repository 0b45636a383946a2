"""
Tests for organizations, memberships, invite codes and maintenance.

Tests cover:
- Organization creation and activation codes
- Joining through invite codes (limits, expiry)
- Role changes, removal and suspension rules
- Audit trail listing
- Monthly usage reset and the maintenance sweep
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from line_summarizer.core.permissions import Role
from line_summarizer.models.audit_log import AuditLog, AuditStatus
from line_summarizer.models.chat_session import ChatSession, CloseReason
from line_summarizer.models.invite_code import InviteCode, InviteCodeStatus
from line_summarizer.models.organization import Organization, Plan
from line_summarizer.models.organization_member import MemberStatus, OrganizationMember
from line_summarizer.services.maintenance import MaintenanceLoop
from line_summarizer.services.organization_service import OrganizationService
from line_summarizer.services.session_manager import MessageContent, Sender
from tests.factories import (
    ACME_ACTIVATION_CODE,
    add_member,
    auth_headers,
    create_organization,
    superadmin_headers,
)

API = "/api/v1"


def org_url(organization, path: str = "") -> str:
    return f"{API}/organizations/{organization.id}{path}"


async def insert_invite(organization, **kwargs) -> InviteCode:
    invite = InviteCode(organization_id=str(organization.id), created_by="owner-1", **kwargs)
    await invite.insert()
    return invite


class TestOrganizations:

    @pytest.mark.asyncio
    async def test_create_organization(self, test_client):
        response = await test_client.post(
            f"{API}/organizations",
            json={"name": "Initech <b>Ltd</b>", "slug": "initech"},
            headers=auth_headers("founder-1"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "Initech Ltd"
        assert data["plan"] == "free"
        assert data["activation_code"].startswith("ORG-")
        assert data["usage"]["current_users"] == 1

        owner = await OrganizationMember.find_one(OrganizationMember.organization_id == data["id"])
        assert owner.user_id == "founder-1"
        assert owner.role == Role.OWNER
        entry = await AuditLog.find_one(AuditLog.action == "organization:create")
        assert entry.organization_id == data["id"]
        assert entry.status == AuditStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_duplicate_slug_conflicts(self, test_client, organization):
        response = await test_client.post(
            f"{API}/organizations",
            json={"name": "Acme Again", "slug": "acme"},
            headers=auth_headers("founder-1"),
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_invalid_slug_rejected(self, test_client, test_db):
        response = await test_client.post(
            f"{API}/organizations",
            json={"name": "Bad", "slug": "Not A Slug"},
            headers=auth_headers("founder-1"),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_activation_code_visible_to_admin(self, test_client, organization, members):
        response = await test_client.get(org_url(organization), headers=auth_headers("admin-1"))

        assert response.status_code == 200
        assert response.json()["activation_code"] == ACME_ACTIVATION_CODE

    @pytest.mark.asyncio
    async def test_viewer_cannot_read_settings(self, test_client, organization, members):
        response = await test_client.get(org_url(organization), headers=auth_headers("viewer-1"))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_regenerate_activation_code(self, test_client, organization, members):
        response = await test_client.post(
            org_url(organization, "/activation-code"), headers=auth_headers("admin-1"),
        )

        assert response.status_code == 200
        new_code = response.json()["activation_code"]
        assert new_code != ACME_ACTIVATION_CODE
        stored = await Organization.get(organization.id)
        assert stored.activation_code == new_code
        entry = await AuditLog.find_one(AuditLog.action == "organization:activation_code")
        assert entry.changes.before == {"activation_code": ACME_ACTIVATION_CODE}


class TestInviteCodes:

    @pytest.mark.asyncio
    async def test_create_and_redeem(self, test_client, organization, members):
        created = await test_client.post(
            org_url(organization, "/invite-codes"),
            json={"name": "Support team", "default_role": "viewer", "max_uses": 5},
            headers=auth_headers("admin-1"),
        )
        assert created.status_code == 201
        code = created.json()["code"]

        joined = await test_client.post(
            f"{API}/organizations/join", json={"code": code.lower()}, headers=auth_headers("newcomer"),
        )

        assert joined.status_code == 201
        data = joined.json()
        assert data["organization"]["id"] == str(organization.id)
        assert data["organization"]["activation_code"] is None
        assert data["member"]["role"] == "viewer"
        assert data["member"]["invited_by"] == "admin-1"

        invite = await InviteCode.find_one(InviteCode.code == code)
        assert invite.current_uses == 1
        stored = await Organization.get(organization.id)
        assert stored.usage.current_users == 5
        assert await AuditLog.find_one(AuditLog.action == "member:join", AuditLog.user_id == "newcomer")

    @pytest.mark.asyncio
    async def test_admin_cannot_create_owner_code(self, test_client, organization, members):
        response = await test_client.post(
            org_url(organization, "/invite-codes"),
            json={"default_role": "owner"},
            headers=auth_headers("admin-1"),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["message"] == "Invite codes cannot grant the owner role"

    @pytest.mark.asyncio
    async def test_past_expiry_rejected(self, test_client, organization, members):
        response = await test_client.post(
            org_url(organization, "/invite-codes"),
            json={"expires_at": (datetime.utcnow() - timedelta(days=1)).isoformat()},
            headers=auth_headers("admin-1"),
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_expired_code_is_marked(self, test_client, organization, members):
        invite = await insert_invite(organization, expires_at=datetime.utcnow() - timedelta(hours=1))

        response = await test_client.post(
            f"{API}/organizations/join", json={"code": invite.code}, headers=auth_headers("newcomer"),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Invite code is no longer valid"
        assert (await InviteCode.get(invite.id)).status == InviteCodeStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_code(self, test_client, organization):
        response = await test_client.post(
            f"{API}/organizations/join", json={"code": "ZZZZ-ZZZZ"}, headers=auth_headers("newcomer"),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_user_limit_blocks_join(self, test_client, test_db):
        organization = await create_organization("Free Co", "free-co", plan=Plan.FREE)
        organization.usage.current_users = organization.limits.max_users
        await organization.save()
        invite = await insert_invite(organization)

        response = await test_client.post(
            f"{API}/organizations/join", json={"code": invite.code}, headers=auth_headers("newcomer"),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["message"] == "User limit reached (5 users on free plan)"
        assert await OrganizationMember.find_one(OrganizationMember.user_id == "newcomer") is None

    @pytest.mark.asyncio
    async def test_disabled_code_cannot_be_redeemed(self, test_client, organization, members):
        invite = await insert_invite(organization)

        disabled = await test_client.delete(
            org_url(organization, f"/invite-codes/{invite.id}"), headers=auth_headers("admin-1"),
        )
        assert disabled.json()["status"] == "disabled"

        response = await test_client.post(
            f"{API}/organizations/join", json={"code": invite.code}, headers=auth_headers("newcomer"),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_existing_member_cannot_join_again(self, test_client, organization, members):
        invite = await insert_invite(organization)

        response = await test_client.post(
            f"{API}/organizations/join", json={"code": invite.code}, headers=auth_headers("member-1"),
        )

        assert response.status_code == 409


class TestMemberManagement:

    @pytest.mark.asyncio
    async def test_change_role(self, test_client, organization, members):
        response = await test_client.put(
            org_url(organization, "/members/viewer-1/role"),
            json={"role": "member"},
            headers=auth_headers("admin-1"),
        )

        assert response.status_code == 200
        assert response.json()["role"] == "member"
        entry = await AuditLog.find_one(AuditLog.action == "member:role_change")
        assert entry.changes.before == {"role": "viewer"}
        assert entry.changes.after == {"role": "member"}

    @pytest.mark.asyncio
    async def test_admin_cannot_promote_to_owner(self, test_client, organization, members):
        response = await test_client.put(
            org_url(organization, "/members/member-1/role"),
            json={"role": "owner"},
            headers=auth_headers("admin-1"),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["message"] == "Only owners can grant the owner role"

    @pytest.mark.asyncio
    async def test_last_owner_cannot_be_demoted(self, test_client, organization, members):
        response = await test_client.put(
            org_url(organization, "/members/owner-1/role"),
            json={"role": "admin"},
            headers=superadmin_headers(),
        )

        assert response.status_code == 409
        assert (await OrganizationMember.get(members[Role.OWNER].id)).role == Role.OWNER

    @pytest.mark.asyncio
    async def test_removed_member_loses_access(self, test_client, organization, members):
        response = await test_client.delete(
            org_url(organization, "/members/member-1"), headers=auth_headers("admin-1"),
        )
        assert response.status_code == 204

        stored = await OrganizationMember.get(members[Role.MEMBER].id)
        assert stored.status == MemberStatus.REMOVED
        assert stored.removed_by == "admin-1"
        assert (await Organization.get(organization.id)).usage.current_users == 3

        denied = await test_client.get(org_url(organization, "/sessions"), headers=auth_headers("member-1"))
        assert denied.status_code == 403

        listed = await test_client.get(org_url(organization, "/members"), headers=auth_headers("admin-1"))
        assert {m["user_id"] for m in listed.json()["members"]} == {"owner-1", "admin-1", "viewer-1"}

    @pytest.mark.asyncio
    async def test_owners_cannot_be_suspended(self, test_client, organization, members):
        await add_member(organization, "owner-2", Role.OWNER)

        response = await test_client.post(
            org_url(organization, "/members/owner-2/suspend"), headers=auth_headers("owner-1"),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["message"] == "Owners cannot be suspended"

    @pytest.mark.asyncio
    async def test_suspend_and_reactivate(self, test_client, organization, members):
        suspended = await test_client.post(
            org_url(organization, "/members/viewer-1/suspend"), headers=auth_headers("admin-1"),
        )
        assert suspended.json()["status"] == "suspended"

        denied = await test_client.get(org_url(organization, "/sessions"), headers=auth_headers("viewer-1"))
        assert denied.status_code == 403

        reactivated = await test_client.post(
            org_url(organization, "/members/viewer-1/reactivate"), headers=auth_headers("admin-1"),
        )
        assert reactivated.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_removed_member_is_reactivated_on_add(self, organization, members):
        service = OrganizationService()
        member = members[Role.VIEWER]
        member.status = MemberStatus.REMOVED
        await member.save()

        readded = await service.add_member(organization, "viewer-1", role=Role.MEMBER)

        assert readded.id == member.id
        assert readded.status == MemberStatus.ACTIVE
        assert readded.role == Role.MEMBER
        assert await OrganizationMember.find(OrganizationMember.user_id == "viewer-1").count() == 1


class TestAuditTrail:

    @pytest.mark.asyncio
    async def test_list_filtered_by_action(self, test_client, organization, members):
        await test_client.put(
            org_url(organization, "/members/viewer-1/role"),
            json={"role": "member"},
            headers=auth_headers("admin-1"),
        )
        await test_client.post(org_url(organization, "/activation-code"), headers=auth_headers("admin-1"))

        response = await test_client.get(
            org_url(organization, "/audit-logs"),
            params={"action": "member:role_change"},
            headers=auth_headers("owner-1"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["logs"][0]["resource_id"] == "viewer-1"
        assert data["logs"][0]["user_id"] == "admin-1"

    @pytest.mark.asyncio
    async def test_member_cannot_read_audit_trail(self, test_client, organization, members):
        response = await test_client.get(org_url(organization, "/audit-logs"), headers=auth_headers("member-1"))

        assert response.status_code == 403


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_monthly_usage_reset(self, organization):
        organization.usage.messages_this_month = 120
        organization.usage.summaries_this_month = 4
        organization.usage.last_usage_reset = datetime(2024, 5, 20)
        await organization.save()

        reset = await OrganizationService().reset_monthly_usage(now=datetime(2024, 6, 1, 0, 5))

        assert reset == 1
        stored = await Organization.get(organization.id)
        assert stored.usage.messages_this_month == 0
        assert stored.usage.summaries_this_month == 0
        assert stored.usage.last_usage_reset == datetime(2024, 6, 1, 0, 5)

    @pytest.mark.asyncio
    async def test_usage_reset_skips_current_month(self, organization):
        organization.usage.messages_this_month = 120
        organization.usage.last_usage_reset = datetime(2024, 6, 1, 0, 5)
        await organization.save()

        assert await OrganizationService().reset_monthly_usage(now=datetime(2024, 6, 18)) == 0
        assert (await Organization.get(organization.id)).usage.messages_this_month == 120

    @pytest.mark.asyncio
    async def test_sweep_closes_stale_sessions(self, session_manager, room):
        session, _ = await session_manager.handle_incoming_message(
            room, Sender(user_id="U-member", display_name="Somchai"), MessageContent(text="anyone?")
        )
        await ChatSession.find_one(ChatSession.id == session.id).update(
            {"$set": {"start_time": datetime.utcnow() - timedelta(hours=30)}}
        )
        loop = MaintenanceLoop(
            session_manager=session_manager,
            organization_service=OrganizationService(),
            interval_seconds=0,
        )

        assert await loop.run_once() == 1
        assert (await ChatSession.get(session.id)).close_reason == CloseReason.EXPIRED

    @pytest.mark.asyncio
    async def test_disabled_loop_does_not_start(self, session_manager):
        loop = MaintenanceLoop(
            session_manager=session_manager,
            organization_service=OrganizationService(),
            interval_seconds=0,
        )

        assert loop.start() is None
        await loop.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_failing_sweep(self, session_manager):
        organization_service = AsyncMock(spec=OrganizationService)
        organization_service.reset_monthly_usage.side_effect = ValueError("corrupt usage document")
        loop = MaintenanceLoop(
            session_manager=session_manager,
            organization_service=organization_service,
            interval_seconds=0.01,
        )

        task = loop.start()
        await asyncio.sleep(0.1)

        assert not task.done()
        assert organization_service.reset_monthly_usage.await_count >= 2
        await loop.stop()
        assert task.done()
        assert task.exception() is None
