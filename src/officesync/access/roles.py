"""Workspace role resolution and capability derivation.

A user's role comes from two sources, consulted in order:

1. the non-removed ``workspace_members`` row for (workspace, user);
2. failing that, the workspace's ``created_by``: the creator is always
   implicitly an owner, even if no membership row was ever materialized.

Anything else (including a store or identity failure) resolves to no role,
which means no access. Capabilities are granted by a single coarse threshold
on the role ordinal.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from pydantic import BaseModel

from ..core.errors import PermissionDeniedError, StoreError
from ..core.models import ROLE_HIERARCHY, Role
from ..store.base import SPACES, WORKSPACE_MEMBERS, WORKSPACES, DataStore
from ..utils.logging import get_logger

logger = get_logger(__name__)

CAPABILITIES = (
    "manage_members",
    "edit_rooms",
    "moderate_chat",
    "manage_workspace",
    "invite",
    "kick",
    "ban",
)

# Every capability above is granted from this ordinal upwards.
CAPABILITY_THRESHOLD = ROLE_HIERARCHY[Role.ADMIN]

# Roles that can be handed out through invite links.
INVITABLE_ROLES = (Role.ADMIN, Role.MEMBER, Role.GUEST)


def role_level(role: Optional[Role]) -> int:
    """Ordinal of ``role``; -1 for no role."""
    return ROLE_HIERARCHY[role] if role is not None else -1


def invitable_roles(role: Optional[Role]) -> List[Role]:
    """Roles an actor holding ``role`` may grant, strictly below their own."""
    level = role_level(role)
    if level < CAPABILITY_THRESHOLD:
        return []
    return [r for r in INVITABLE_ROLES if ROLE_HIERARCHY[r] < level]


class Capabilities(BaseModel):
    """Capability set derived from a role."""

    role: Optional[Role] = None
    is_owner: bool = False
    is_admin: bool = False
    is_member: bool = False
    is_guest: bool = False
    can_manage_members: bool = False
    can_edit_rooms: bool = False
    can_moderate_chat: bool = False
    can_manage_workspace: bool = False
    can_invite: bool = False
    can_kick: bool = False
    can_ban: bool = False

    @classmethod
    def from_role(cls, role: Optional[Role]) -> "Capabilities":
        level = role_level(role)
        privileged = level >= CAPABILITY_THRESHOLD
        return cls(
            role=role,
            is_owner=role == Role.OWNER,
            is_admin=privileged,
            is_member=level >= ROLE_HIERARCHY[Role.MEMBER],
            is_guest=level >= ROLE_HIERARCHY[Role.GUEST],
            **{f"can_{name}": privileged for name in CAPABILITIES},
        )

    @property
    def has_access(self) -> bool:
        return self.role is not None

    def allows(self, capability: str) -> bool:
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {capability}")
        return getattr(self, f"can_{capability}")

    def require(self, capability: str) -> None:
        """Raise :class:`PermissionDeniedError` unless ``capability`` is granted."""
        if not self.allows(capability):
            raise PermissionDeniedError(capability, self.role.value if self.role else None)

    def granted(self) -> List[str]:
        return [name for name in CAPABILITIES if self.allows(name)]


class RoleResolver:
    """Resolves roles against the datastore. Stateless: every call re-reads."""

    def __init__(self, store: DataStore) -> None:
        self.store = store

    async def resolve_role(self, workspace_id: Optional[str], user_id: Optional[str]) -> Optional[Role]:
        if not workspace_id or not user_id:
            return None
        try:
            rows = await self.store.select(
                WORKSPACE_MEMBERS,
                eq={"workspace_id": workspace_id, "user_id": user_id},
                is_null=["removed_at"],
                limit=1,
            )
            if rows:
                return Role(rows[0]["role"])

            workspaces = await self.store.select(WORKSPACES, eq={"id": workspace_id}, limit=1)
        except StoreError as e:
            logger.warning(
                f"Role lookup failed, treating as no access: {e}",
                extra={"workspace_id": workspace_id, "user_id": user_id},
            )
            return None
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed membership row: {e}", extra={"workspace_id": workspace_id})
            return None

        if workspaces and workspaces[0].get("created_by") == user_id:
            logger.debug("Creator without membership row resolved as owner", extra={"workspace_id": workspace_id})
            return Role.OWNER
        return None

    async def resolve_current_role(self, workspace_id: Optional[str]) -> Optional[Role]:
        """Role of the signed-in principal; None when signed out."""
        try:
            principal = await self.store.current_principal()
        except StoreError as e:
            logger.warning(f"Identity lookup failed: {e}")
            return None
        if principal is None:
            return None
        return await self.resolve_role(workspace_id, principal.id)

    async def capabilities(self, workspace_id: Optional[str], user_id: Optional[str] = None) -> Capabilities:
        if user_id is None:
            role = await self.resolve_current_role(workspace_id)
        else:
            role = await self.resolve_role(workspace_id, user_id)
        return Capabilities.from_role(role)

    def watch(self, workspace_id: Optional[str], user_id: Optional[str] = None) -> "WorkspaceRole":
        return WorkspaceRole(self, workspace_id, user_id)


class WorkspaceRole:
    """Live role handle for one workspace, refreshed via :meth:`refetch`.

    Concurrent refetches are allowed; only the most recently started one
    gets to publish its result.
    """

    def __init__(self, resolver: RoleResolver, workspace_id: Optional[str], user_id: Optional[str] = None) -> None:
        self.resolver = resolver
        self.workspace_id = workspace_id
        self.user_id = user_id
        self.capabilities = Capabilities()
        self.loading = True
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def role(self) -> Optional[Role]:
        return self.capabilities.role

    async def refetch(self) -> Capabilities:
        async with self._lock:
            self._generation += 1
            generation = self._generation
            self.loading = True
        caps = await self.resolver.capabilities(self.workspace_id, self.user_id)
        async with self._lock:
            if generation == self._generation:
                self.capabilities = caps
                self.loading = False
        return caps

    def __repr__(self) -> str:
        return f"<WorkspaceRole workspace={self.workspace_id} role={self.role}>"


async def workspace_id_for_space(store: DataStore, space_id: str) -> Optional[str]:
    """Workspace owning ``space_id``, or None if the space is unknown."""
    rows = await store.select(SPACES, eq={"id": space_id}, limit=1)
    return rows[0]["workspace_id"] if rows else None
