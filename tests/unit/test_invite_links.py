"""Unit tests for invite link management."""

from datetime import timedelta
import uuid

import pytest

from officesync.core.errors import InvalidInputError, InviteFailure, PermissionDeniedError, StoreError
from officesync.core.models import Role, utcnow
from officesync.invites.acceptor import InviteAcceptor, InviteState
from officesync.invites.links import InviteLinkService, invite_url, parse_expiry

from tests.conftest import ADMIN, MEMBER, OWNER, VISITOR


class TestHelpers:
    def test_parse_expiry(self):
        assert parse_expiry("1d") == timedelta(days=1)
        assert parse_expiry("30d") == timedelta(days=30)
        assert parse_expiry("never") is None
        assert parse_expiry(None) is None
        assert parse_expiry(timedelta(hours=2)) == timedelta(hours=2)
        with pytest.raises(InvalidInputError):
            parse_expiry("fortnight")

    def test_invite_url(self):
        assert invite_url("https://office.test/", "abc") == "https://office.test/invite/abc"


class TestInviteLinkService:
    """Test create/list/revoke."""

    @pytest.mark.asyncio
    async def test_create_link(self, world):
        link = await InviteLinkService(world.store(ADMIN)).create_link(
            world.workspace_id, role=Role.GUEST, expires_in="1d", max_uses=3, label="Contractors"
        )

        uuid.UUID(link.token)
        assert link.role == Role.GUEST
        assert link.invited_by == ADMIN.id
        assert link.max_uses == 3
        assert link.use_count == 0
        assert link.label == "Contractors"
        assert timedelta(hours=23) < link.expires_at - utcnow() <= timedelta(days=1)

    @pytest.mark.asyncio
    async def test_never_expiring_unlimited_link(self, world):
        link = await InviteLinkService(world.store(OWNER)).create_link(world.workspace_id, expires_in="never")
        assert link.expires_at is None
        assert link.max_uses is None
        assert link.label.startswith("Link member")

    @pytest.mark.asyncio
    async def test_created_link_can_be_redeemed(self, world):
        link = await InviteLinkService(world.store(OWNER)).create_link(world.workspace_id, role=Role.ADMIN)
        outcome = await InviteAcceptor(world.store(VISITOR), link.token).run()

        assert outcome.state is InviteState.SUCCESS
        assert [m["role"] for m in world.memberships(VISITOR.id)] == ["admin"]

    @pytest.mark.asyncio
    async def test_members_cannot_invite(self, world):
        with pytest.raises(PermissionDeniedError):
            await InviteLinkService(world.store(MEMBER)).create_link(world.workspace_id)
        with pytest.raises(PermissionDeniedError):
            await InviteLinkService(world.store()).create_link(world.workspace_id)

    @pytest.mark.asyncio
    async def test_cannot_grant_own_level_or_above(self, world):
        service = InviteLinkService(world.store(ADMIN))
        for role in (Role.ADMIN, Role.OWNER):
            with pytest.raises(PermissionDeniedError):
                await service.create_link(world.workspace_id, role=role)

    @pytest.mark.asyncio
    async def test_invalid_max_uses(self, world):
        with pytest.raises(InvalidInputError):
            await InviteLinkService(world.store(ADMIN)).create_link(world.workspace_id, max_uses=0)

    @pytest.mark.asyncio
    async def test_list_and_revoke(self, world):
        service = InviteLinkService(world.store(ADMIN))
        first = await service.create_link(world.workspace_id, label="first")
        second = await service.create_link(world.workspace_id, label="second")

        active = await service.list_active(world.workspace_id)
        assert [l.label for l in active if l.label in ("first", "second")] == ["second", "first"]
        assert len(await service.list_active(world.workspace_id, limit=1)) == 1

        revoked = await service.revoke(world.workspace_id, first.id)
        assert revoked.is_revoked
        assert revoked.revoked_by == ADMIN.id

        labels = [l.label for l in await service.list_active(world.workspace_id)]
        assert "first" not in labels
        assert "second" in labels

        outcome = await InviteAcceptor(world.store(VISITOR), first.token).run()
        assert outcome.failure is InviteFailure.REVOKED

        with pytest.raises(StoreError):
            await service.revoke(world.workspace_id, "missing")
