"""In-memory reference datastore.

``MemoryDatabase`` plays the authoritative side: it holds the tables,
implements the two privileged procedures atomically and fans change events
out to subscribers. Each ``InMemoryStore`` is one client's connection to it,
bound to whichever principal is signed in on that client. Several clients
can share a database to exercise concurrent behaviour.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.errors import INVITE_MESSAGES, InviteFailure, StoreError
from ..core.models import (
    ChangeEvent,
    ChangeType,
    InviteLink,
    Principal,
    Role,
    Workspace,
    utcnow,
)
from ..utils.logging import get_logger
from .base import (
    FURNITURE,
    INVITATIONS,
    ROOM_CONNECTIONS,
    ROOMS,
    RPC_ACCEPT_INVITE_LINK,
    RPC_GET_INVITE_INFO,
    SPACES,
    WORKSPACE_MEMBERS,
    WORKSPACES,
    ChangeHandler,
    DataStore,
    Subscription,
    dispatch,
)

logger = get_logger(__name__)

TABLES = (WORKSPACES, WORKSPACE_MEMBERS, INVITATIONS, SPACES, ROOMS, ROOM_CONNECTIONS, FURNITURE)


def _matches(
    row: Dict[str, Any],
    eq: Optional[Dict[str, Any]] = None,
    is_null: Sequence[str] = (),
    in_: Optional[Dict[str, Sequence[Any]]] = None,
) -> bool:
    for column, value in (eq or {}).items():
        if row.get(column) != value:
            return False
    for column in is_null:
        if row.get(column) is not None:
            return False
    for column, values in (in_ or {}).items():
        if row.get(column) not in values:
            return False
    return True


def _sort_key(column: str):
    def key(row: Dict[str, Any]) -> Tuple[bool, str]:
        value = row.get(column)
        if isinstance(value, datetime):
            value = value.isoformat()
        return (value is None, "" if value is None else str(value))
    return key


class MemorySubscription(Subscription):
    def __init__(self, db: "MemoryDatabase", table: str, handler: ChangeHandler, eq: Optional[Dict[str, Any]]) -> None:
        super().__init__(table, eq)
        self.handler = handler
        self._db = db

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._db.subscriptions.remove(self)
        logger.debug("Unsubscribed", extra={"table": self.table, "filter": self.eq})


class MemoryDatabase:
    """Shared table state plus the authoritative procedures."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in TABLES}
        self.subscriptions: List[MemorySubscription] = []
        self._lock = asyncio.Lock()
        self._failures: Dict[str, List[BaseException]] = {}
        self._latency: Dict[str, float] = {}

    # -- seeding and fault injection -------------------------------------

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Insert rows directly, without emitting change events."""
        stored = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables.setdefault(table, []).append(row)
            stored.append(row)
        return stored

    def inject_failure(self, table: str, error: Optional[BaseException] = None, times: int = 1) -> None:
        """Make the next ``times`` reads of ``table`` raise."""
        exc = error or StoreError(f"select {table}", "injected failure", status_code=503)
        self._failures.setdefault(table, []).extend([exc] * times)

    def set_latency(self, table: str, seconds: float) -> None:
        """Delay every read of ``table`` by ``seconds``."""
        self._latency[table] = seconds

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    # -- reads and writes -------------------------------------------------

    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        is_null: Sequence[str] = (),
        in_: Optional[Dict[str, Sequence[Any]]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if self._latency.get(table):
            await asyncio.sleep(self._latency[table])
        pending = self._failures.get(table)
        if pending:
            raise pending.pop(0)
        result = [copy.deepcopy(r) for r in self.rows(table) if _matches(r, eq, is_null, in_)]
        if order_by:
            result.sort(key=_sort_key(order_by))
        if limit is not None:
            result = result[:limit]
        return result

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            stored = dict(row)
            stored.setdefault("id", str(uuid.uuid4()))
            self.rows(table).append(stored)
        await self.emit(ChangeEvent(table=table, type=ChangeType.INSERT, record=copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update(self, table: str, eq: Dict[str, Any], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        events = []
        async with self._lock:
            for row in self.rows(table):
                if _matches(row, eq):
                    old = copy.deepcopy(row)
                    row.update(values)
                    events.append(ChangeEvent(table=table, type=ChangeType.UPDATE, record=copy.deepcopy(row), old_record=old))
        for event in events:
            await self.emit(event)
        return [e.record for e in events]

    async def delete(self, table: str, eq: Dict[str, Any]) -> int:
        async with self._lock:
            rows = self.rows(table)
            removed = [r for r in rows if _matches(r, eq)]
            self.tables[table] = [r for r in rows if not _matches(r, eq)]
        for row in removed:
            await self.emit(ChangeEvent(table=table, type=ChangeType.DELETE, old_record=row))
        return len(removed)

    # -- change feed ------------------------------------------------------

    def subscribe(self, table: str, handler: ChangeHandler, eq: Optional[Dict[str, Any]] = None) -> MemorySubscription:
        sub = MemorySubscription(self, table, handler, eq)
        self.subscriptions.append(sub)
        logger.debug("Subscribed", extra={"table": table, "filter": sub.eq})
        return sub

    async def emit(self, event: ChangeEvent) -> None:
        row = event.record or event.old_record
        for sub in list(self.subscriptions):
            if not sub.active or sub.table != event.table or not _matches(row, sub.eq):
                continue
            try:
                await dispatch(sub.handler, event)
            except Exception:
                # One broken consumer must not stop delivery to the others.
                logger.exception("Change handler failed", extra={"table": event.table})

    # -- privileged procedures --------------------------------------------

    def _invite_row(self, token: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.rows(INVITATIONS) if r.get("token") == token), None)

    def _workspace(self, workspace_id: str) -> Optional[Workspace]:
        row = next((r for r in self.rows(WORKSPACES) if r.get("id") == workspace_id), None)
        return Workspace.model_validate(row) if row else None

    async def get_invite_info(self, token: str) -> Dict[str, Any]:
        row = self._invite_row(token)
        if row is None:
            return {"found": False}
        invite = InviteLink.model_validate(row)
        workspace = self._workspace(invite.workspace_id)
        return {
            "found": True,
            "workspace_id": invite.workspace_id,
            "workspace_name": workspace.name if workspace else None,
            "role": invite.role.value,
            "is_expired": invite.is_expired(),
            "is_revoked": invite.is_revoked,
            "is_exhausted": invite.is_exhausted,
        }

    async def accept_invite_link(self, token: str, principal: Optional[Principal]) -> Dict[str, Any]:
        if principal is None:
            return {"success": False, "error": "Not authenticated", "code": "unauthenticated"}

        events: List[ChangeEvent] = []
        async with self._lock:
            row = self._invite_row(token)
            if row is None:
                return self._refusal(InviteFailure.NOT_FOUND)
            invite = InviteLink.model_validate(row)

            existing = next(
                (
                    m for m in self.rows(WORKSPACE_MEMBERS)
                    if _matches(m, {"workspace_id": invite.workspace_id, "user_id": principal.id}, is_null=["removed_at"])
                ),
                None,
            )
            if existing is not None:
                return {"success": True, "workspace_id": invite.workspace_id, "already_member": True}

            if invite.is_expired():
                return self._refusal(InviteFailure.EXPIRED)
            if invite.is_revoked:
                return self._refusal(InviteFailure.REVOKED)
            if invite.is_exhausted:
                return self._refusal(InviteFailure.EXHAUSTED)

            member = {
                "id": str(uuid.uuid4()),
                "workspace_id": invite.workspace_id,
                "user_id": principal.id,
                "role": invite.role.value,
                "invited_by": invite.invited_by,
                "joined_at": utcnow(),
                "removed_at": None,
            }
            self.rows(WORKSPACE_MEMBERS).append(member)
            old = copy.deepcopy(row)
            row["use_count"] = invite.use_count + 1
            events.append(ChangeEvent(table=WORKSPACE_MEMBERS, type=ChangeType.INSERT, record=copy.deepcopy(member)))
            events.append(ChangeEvent(table=INVITATIONS, type=ChangeType.UPDATE, record=copy.deepcopy(row), old_record=old))

        logger.info(
            "Invite accepted",
            extra={"workspace_id": invite.workspace_id, "user_id": principal.id, "role": invite.role.value},
        )
        for event in events:
            await self.emit(event)
        return {"success": True, "workspace_id": invite.workspace_id, "already_member": False}

    @staticmethod
    def _refusal(failure: InviteFailure) -> Dict[str, Any]:
        return {"success": False, "error": INVITE_MESSAGES[failure], "code": failure.value}


class InMemoryStore(DataStore):
    """One client's connection to a :class:`MemoryDatabase`."""

    def __init__(self, db: Optional[MemoryDatabase] = None, principal: Optional[Principal] = None) -> None:
        self.db = db or MemoryDatabase()
        self.principal = principal
        self._subscriptions: List[MemorySubscription] = []

    def sign_in(self, principal: Principal) -> None:
        self.principal = principal

    def sign_out(self) -> None:
        self.principal = None

    async def current_principal(self) -> Optional[Principal]:
        return self.principal

    async def select(self, table, eq=None, is_null=(), in_=None, order_by=None, limit=None):
        return await self.db.select(table, eq=eq, is_null=is_null, in_=in_, order_by=order_by, limit=limit)

    async def insert(self, table, row):
        return await self.db.insert(table, row)

    async def update(self, table, eq, values):
        return await self.db.update(table, eq, values)

    async def delete(self, table, eq):
        return await self.db.delete(table, eq)

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        token = params.get("p_token")
        if name == RPC_GET_INVITE_INFO:
            return await self.db.get_invite_info(token)
        if name == RPC_ACCEPT_INVITE_LINK:
            return await self.db.accept_invite_link(token, self.principal)
        raise StoreError(f"rpc {name}", "unknown procedure", status_code=404)

    async def subscribe(self, table, handler, eq=None):
        sub = self.db.subscribe(table, handler, eq)
        self._subscriptions.append(sub)
        return sub

    async def close(self) -> None:
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions.clear()


def seed_demo(db: MemoryDatabase, owner_id: str = "owner-1") -> Dict[str, str]:
    """Populate ``db`` with a small workspace, used by the CLI demo."""
    ws = db.seed(WORKSPACES, {"name": "Acme", "created_by": owner_id, "created_at": utcnow()})[0]
    db.seed(WORKSPACE_MEMBERS, {
        "workspace_id": ws["id"], "user_id": owner_id, "role": Role.OWNER.value,
        "joined_at": utcnow(), "removed_at": None,
    })
    space = db.seed(SPACES, {"workspace_id": ws["id"], "name": "HQ", "created_at": utcnow()})[0]
    lobby, meeting = db.seed(
        ROOMS,
        {"space_id": space["id"], "name": "Lobby", "type": "reception", "x": 0, "y": 0},
        {"space_id": space["id"], "name": "Standup", "type": "meeting", "x": 240, "y": 0},
    )
    db.seed(ROOM_CONNECTIONS, {"space_id": space["id"], "room_a_id": lobby["id"], "room_b_id": meeting["id"], "type": "door"})
    db.seed(FURNITURE, {"room_id": meeting["id"], "type": "table", "label": "Standup table", "x": 40, "y": 40})
    return {"workspace_id": ws["id"], "space_id": space["id"]}
