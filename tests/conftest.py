"""Shared fixtures: a seeded in-memory workspace."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from officesync.core.models import Principal
from officesync.store.base import (
    FURNITURE,
    INVITATIONS,
    ROOM_CONNECTIONS,
    ROOMS,
    SPACES,
    WORKSPACE_MEMBERS,
    WORKSPACES,
)
from officesync.store.memory import InMemoryStore, MemoryDatabase

OWNER = Principal(id="owner-1", email="owner@acme.test")
ADMIN = Principal(id="admin-1", email="admin@acme.test")
MEMBER = Principal(id="member-1", email="member@acme.test")
GUEST = Principal(id="guest-1", email="guest@acme.test")
VISITOR = Principal(id="visitor-1", email="visitor@example.test")

FAST_MIRROR = dict(refetch_rate=200.0, refetch_burst=50, retry_backoff=0.01, timeout=2.0)


@dataclass
class World:
    db: MemoryDatabase
    workspace_id: str
    space_id: str
    other_space_id: str
    lobby_id: str
    meeting_id: str
    token: str

    def store(self, principal=None) -> InMemoryStore:
        return InMemoryStore(self.db, principal)

    def invite(self):
        return next(r for r in self.db.rows(INVITATIONS) if r["token"] == self.token)

    def memberships(self, user_id):
        return [m for m in self.db.rows(WORKSPACE_MEMBERS) if m["user_id"] == user_id]


def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def world() -> World:
    db = MemoryDatabase()
    ws = db.seed(WORKSPACES, {"id": "ws-acme", "name": "Acme", "created_by": OWNER.id})[0]
    db.seed(
        WORKSPACE_MEMBERS,
        {"workspace_id": ws["id"], "user_id": OWNER.id, "role": "owner", "removed_at": None},
        {"workspace_id": ws["id"], "user_id": ADMIN.id, "role": "admin", "removed_at": None},
        {"workspace_id": ws["id"], "user_id": MEMBER.id, "role": "member", "removed_at": None},
        {"workspace_id": ws["id"], "user_id": GUEST.id, "role": "guest", "removed_at": None},
    )
    hq, annex = db.seed(
        SPACES,
        {"id": "space-hq", "workspace_id": ws["id"], "name": "HQ", "created_at": now() - timedelta(days=2)},
        {"id": "space-annex", "workspace_id": ws["id"], "name": "Annex", "created_at": now() - timedelta(days=1)},
    )
    lobby, meeting = db.seed(
        ROOMS,
        {"id": "room-lobby", "space_id": hq["id"], "name": "Lobby", "type": "reception"},
        {"id": "room-meeting", "space_id": hq["id"], "name": "Meeting", "type": "meeting", "x": 240},
    )
    db.seed(ROOMS, {"id": "room-annex", "space_id": annex["id"], "name": "Annex hall"})
    db.seed(
        ROOM_CONNECTIONS,
        {"id": "conn-1", "space_id": hq["id"], "room_a_id": lobby["id"], "room_b_id": meeting["id"], "type": "door"},
    )
    db.seed(
        FURNITURE,
        {"id": "desk-1", "room_id": meeting["id"], "type": "table", "label": "Big table"},
        {"id": "plant-1", "room_id": lobby["id"], "type": "plant"},
        {"id": "sofa-annex", "room_id": "room-annex", "type": "sofa"},
    )
    invite = db.seed(INVITATIONS, {
        "token": "tok-acme-member",
        "workspace_id": ws["id"],
        "role": "member",
        "invited_by": ADMIN.id,
        "expires_at": now() + timedelta(days=7),
        "revoked_at": None,
        "max_uses": 5,
        "use_count": 0,
    })[0]
    return World(
        db=db,
        workspace_id=ws["id"],
        space_id=hq["id"],
        other_space_id=annex["id"],
        lobby_id=lobby["id"],
        meeting_id=meeting["id"],
        token=invite["token"],
    )
