"""Session-scoped ownership of the active space's mirror."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from ..access.roles import Capabilities, RoleResolver, WorkspaceRole, workspace_id_for_space
from ..store.base import DataStore
from ..utils.logging import get_logger
from .state import StateMirror

logger = get_logger(__name__)


class OfficeSession:
    """
    Owns at most one :class:`StateMirror` per client: the one for the space
    the user is currently in.

    Entering another space tears the previous mirror down before the new one
    subscribes, so no stale cycle from the old space is ever applied. The
    session also keeps the user's role in the space's workspace, which gates
    builder mode.
    """

    def __init__(self, store: DataStore, resolver: Optional[RoleResolver] = None, **mirror_options: Any) -> None:
        self.store = store
        self.resolver = resolver or RoleResolver(store)
        self.mirror_options = mirror_options
        self.mirror: Optional[StateMirror] = None
        self.role: Optional[WorkspaceRole] = None
        self.workspace_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def space_id(self) -> Optional[str]:
        return self.mirror.space_id if self.mirror else None

    @property
    def capabilities(self) -> Capabilities:
        return self.role.capabilities if self.role else Capabilities()

    async def enter(self, space_id: str) -> StateMirror:
        """Make ``space_id`` the active space and start mirroring it."""
        async with self._lock:
            if self.mirror is not None and self.mirror.space_id == space_id and self.mirror.running:
                return self.mirror
            await self._teardown()

            self.workspace_id = await workspace_id_for_space(self.store, space_id)
            self.role = self.resolver.watch(self.workspace_id)
            await self.role.refetch()

            mirror = StateMirror(self.store, space_id, **self.mirror_options)
            self.mirror = mirror
            logger.info(
                "Entering space",
                extra={"space_id": space_id, "workspace_id": self.workspace_id, "role": self.role.role},
            )
            await mirror.start()
            return mirror

    async def leave(self) -> None:
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        if self.mirror is None:
            return
        logger.info("Leaving space", extra={"space_id": self.mirror.space_id})
        mirror, self.mirror = self.mirror, None
        self.role = None
        self.workspace_id = None
        await mirror.stop()

    async def __aenter__(self) -> "OfficeSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.leave()
