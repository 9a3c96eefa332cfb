"""Invite link management: create, list and revoke.

Every operation is gated locally on the ``invite`` capability before the
store is touched; the authoritative side enforces its own policy too.
"""

import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Union

from ..core.errors import InvalidInputError, PermissionDeniedError, StoreError
from ..core.models import InviteLink, Principal, Role, utcnow
from ..access.roles import Capabilities, RoleResolver, invitable_roles
from ..store.base import INVITATIONS, DataStore
from ..utils.logging import get_logger

logger = get_logger(__name__)

EXPIRY_PRESETS: Dict[str, Optional[timedelta]] = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "never": None,
}

Expiry = Union[str, timedelta, None]


def parse_expiry(expires_in: Expiry) -> Optional[timedelta]:
    if expires_in is None or isinstance(expires_in, timedelta):
        return expires_in
    if expires_in not in EXPIRY_PRESETS:
        raise InvalidInputError(f"Unknown expiry preset '{expires_in}' (use one of {', '.join(EXPIRY_PRESETS)})")
    return EXPIRY_PRESETS[expires_in]


def invite_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/invite/{token}"


class InviteLinkService:
    """Creates and revokes invite links on behalf of the signed-in user."""

    def __init__(self, store: DataStore, resolver: Optional[RoleResolver] = None) -> None:
        self.store = store
        self.resolver = resolver or RoleResolver(store)

    async def _authorize(self, workspace_id: str) -> tuple[Principal, Capabilities]:
        principal = await self.store.current_principal()
        if principal is None:
            raise PermissionDeniedError("invite")
        caps = await self.resolver.capabilities(workspace_id, principal.id)
        caps.require("invite")
        return principal, caps

    async def create_link(
        self,
        workspace_id: str,
        role: Role = Role.MEMBER,
        expires_in: Expiry = "7d",
        max_uses: Optional[int] = None,
        label: Optional[str] = None,
    ) -> InviteLink:
        """
        Create a new invite link.

        Args:
            workspace_id: Workspace to invite into
            role: Role granted on acceptance
            expires_in: Preset ("1d", "7d", "30d", "never") or a timedelta
            max_uses: Maximum redemptions, None for unlimited
            label: Free-form label shown in the invite list

        Returns:
            The stored InviteLink

        Raises:
            PermissionDeniedError: If the caller may not invite, or may not grant ``role``
            InvalidInputError: If expiry or max_uses are malformed
        """
        ttl = parse_expiry(expires_in)
        if max_uses is not None and max_uses < 1:
            raise InvalidInputError("max_uses must be at least 1")

        principal, caps = await self._authorize(workspace_id)
        if role not in invitable_roles(caps.role):
            raise PermissionDeniedError(f"invite:{role.value}", caps.role.value if caps.role else None)

        now = utcnow()
        link = InviteLink(
            id=str(uuid.uuid4()),
            token=str(uuid.uuid4()),
            workspace_id=workspace_id,
            role=role,
            invited_by=principal.id,
            invited_at=now,
            label=label or f"Link {role.value} - {now.date().isoformat()}",
            expires_at=now + ttl if ttl is not None else None,
            max_uses=max_uses,
        )
        stored = await self.store.insert(INVITATIONS, link.model_dump(mode="json"))
        logger.info(
            "Invite link created",
            extra={"workspace_id": workspace_id, "role": role.value, "max_uses": max_uses},
        )
        return InviteLink.model_validate(stored)

    async def list_active(self, workspace_id: str, limit: int = 20) -> List[InviteLink]:
        """Non-revoked links of the workspace, newest first."""
        await self._authorize(workspace_id)
        rows = await self.store.select(
            INVITATIONS,
            eq={"workspace_id": workspace_id},
            is_null=["revoked_at"],
            order_by="invited_at",
        )
        links = [InviteLink.model_validate(r) for r in rows]
        links.reverse()
        return links[:limit]

    async def revoke(self, workspace_id: str, invite_id: str) -> InviteLink:
        principal, _ = await self._authorize(workspace_id)
        rows = await self.store.update(
            INVITATIONS,
            eq={"id": invite_id, "workspace_id": workspace_id},
            values={"revoked_at": utcnow().isoformat(), "revoked_by": principal.id},
        )
        if not rows:
            raise StoreError("revoke invite", f"invite {invite_id} not found", status_code=404)
        logger.info("Invite link revoked", extra={"workspace_id": workspace_id, "invite_id": invite_id})
        return InviteLink.model_validate(rows[0])
