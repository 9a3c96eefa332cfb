"""Unit tests for the in-memory datastore and its procedures."""

import asyncio

import pytest

from officesync.core.errors import StoreError
from officesync.core.models import ChangeType, Principal
from officesync.store.base import (
    INVITATIONS,
    ROOMS,
    RPC_ACCEPT_INVITE_LINK,
    RPC_GET_INVITE_INFO,
    SPACES,
    WORKSPACE_MEMBERS,
)
from officesync.store.memory import MemoryDatabase, seed_demo

from tests.conftest import VISITOR, now


class TestTables:
    """Test select/insert/update/delete."""

    @pytest.mark.asyncio
    async def test_filters(self, world):
        store = world.store()
        rooms = await store.select(ROOMS, eq={"space_id": world.space_id}, order_by="name")
        assert [r["name"] for r in rooms] == ["Lobby", "Meeting"]

        members = await store.select(WORKSPACE_MEMBERS, in_={"role": ["owner", "admin"]})
        assert sorted(m["role"] for m in members) == ["admin", "owner"]

        first = await store.select(SPACES, eq={"workspace_id": world.workspace_id}, order_by="created_at", limit=1)
        assert [s["id"] for s in first] == [world.space_id]

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, world):
        rows = await world.store().select(ROOMS, eq={"id": world.lobby_id})
        rows[0]["name"] = "Changed"
        again = await world.store().select(ROOMS, eq={"id": world.lobby_id})
        assert again[0]["name"] == "Lobby"

    @pytest.mark.asyncio
    async def test_change_events(self, world):
        events = []
        store = world.store()
        sub = await store.subscribe(ROOMS, events.append, eq={"space_id": world.space_id})

        row = await store.insert(ROOMS, {"space_id": world.space_id, "name": "Focus"})
        await store.update(ROOMS, {"id": row["id"]}, {"name": "Deep focus"})
        await store.insert(ROOMS, {"space_id": world.other_space_id, "name": "Elsewhere"})
        await store.delete(ROOMS, {"id": row["id"]})
        await sub.unsubscribe()
        await store.insert(ROOMS, {"space_id": world.space_id, "name": "Unheard"})

        assert [e.type for e in events] == [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE]
        assert events[1].old_record["name"] == "Focus"
        assert events[1].record["name"] == "Deep focus"
        assert events[2].old_record["id"] == row["id"]

    @pytest.mark.asyncio
    async def test_broken_handler_does_not_block_others(self, world):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        store = world.store()
        await store.subscribe(ROOMS, broken)
        await store.subscribe(ROOMS, seen.append)
        await store.insert(ROOMS, {"space_id": world.space_id, "name": "Focus"})
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_injected_failure(self, world):
        world.db.inject_failure(ROOMS, times=2)
        store = world.store()
        for _ in range(2):
            with pytest.raises(StoreError):
                await store.select(ROOMS)
        assert len(await store.select(ROOMS)) == 3

    @pytest.mark.asyncio
    async def test_close_releases_subscriptions(self, world):
        async with world.store() as store:
            await store.subscribe(ROOMS, lambda e: None)
            assert len(world.db.subscriptions) == 1
        assert world.db.subscriptions == []

    @pytest.mark.asyncio
    async def test_unknown_procedure(self, world):
        with pytest.raises(StoreError) as exc_info:
            await world.store().rpc("drop_everything", {})
        assert exc_info.value.status_code == 404


class TestInviteProcedures:
    """Test the authoritative invite procedures."""

    @pytest.mark.asyncio
    async def test_invite_info(self, world):
        info = await world.store().rpc(RPC_GET_INVITE_INFO, {"p_token": world.token})
        assert info == {
            "found": True,
            "workspace_id": world.workspace_id,
            "workspace_name": "Acme",
            "role": "member",
            "is_expired": False,
            "is_revoked": False,
            "is_exhausted": False,
        }
        assert await world.store().rpc(RPC_GET_INVITE_INFO, {"p_token": "nope"}) == {"found": False}

    @pytest.mark.asyncio
    async def test_accept_requires_principal(self, world):
        result = await world.store().rpc(RPC_ACCEPT_INVITE_LINK, {"p_token": world.token})
        assert result["success"] is False
        assert world.invite()["use_count"] == 0

    @pytest.mark.asyncio
    async def test_accept_rechecks_terminal_conditions(self, world):
        world.invite()["revoked_at"] = now()
        result = await world.store(VISITOR).rpc(RPC_ACCEPT_INVITE_LINK, {"p_token": world.token})
        assert result == {"success": False, "error": "This invite has been revoked.", "code": "revoked"}

    @pytest.mark.asyncio
    async def test_concurrent_accepts_respect_max_uses(self, world):
        world.invite()["max_uses"] = 1
        users = [Principal(id=f"user-{i}") for i in range(5)]

        results = await asyncio.gather(*[
            world.store(user).rpc(RPC_ACCEPT_INVITE_LINK, {"p_token": world.token}) for user in users
        ])

        assert sum(r["success"] for r in results) == 1
        assert {r.get("code") for r in results if not r["success"]} == {"exhausted"}
        assert world.invite()["use_count"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_accepts_by_same_user(self, world):
        store = world.store(VISITOR)
        results = await asyncio.gather(*[
            store.rpc(RPC_ACCEPT_INVITE_LINK, {"p_token": world.token}) for _ in range(3)
        ])

        assert [r["already_member"] for r in results].count(False) == 1
        assert all(r["success"] for r in results)
        assert len(world.memberships(VISITOR.id)) == 1
        assert world.invite()["use_count"] == 1


def test_seed_demo():
    db = MemoryDatabase()
    ids = seed_demo(db, owner_id="owner-9")
    assert db.rows(SPACES)[0]["id"] == ids["space_id"]
    assert db.rows(WORKSPACE_MEMBERS)[0]["user_id"] == "owner-9"
    assert len(db.rows(ROOMS)) == 2
    assert db.rows(INVITATIONS) == []
