"""Base classes and interfaces for datastore adapters.

The authoritative store is external: it owns every true mutation and the
row-level visibility policy. The core only talks to it through this port.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..core.models import ChangeEvent, Principal

ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]

# Table names used by the core.
WORKSPACES = "workspaces"
WORKSPACE_MEMBERS = "workspace_members"
INVITATIONS = "workspace_invitations"
SPACES = "spaces"
ROOMS = "rooms"
ROOM_CONNECTIONS = "room_connections"
FURNITURE = "furniture"

# Privileged remote procedures.
RPC_GET_INVITE_INFO = "get_invite_info"
RPC_ACCEPT_INVITE_LINK = "accept_invite_link"


async def dispatch(handler: ChangeHandler, event: ChangeEvent) -> None:
    """Invoke a change handler that may be sync or async."""
    result = handler(event)
    if inspect.isawaitable(result):
        await result


class Subscription(ABC):
    """Handle for one change-event subscription."""

    def __init__(self, table: str, eq: Optional[Dict[str, Any]] = None) -> None:
        self.table = table
        self.eq = dict(eq or {})
        self.active = True

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivering events. Safe to call more than once."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} table={self.table} eq={self.eq} active={self.active}>"


class DataStore(ABC):
    """Abstract base class for all datastore adapters."""

    @abstractmethod
    async def current_principal(self) -> Optional[Principal]:
        """Return the authenticated user, or None when signed out."""
        raise NotImplementedError

    @abstractmethod
    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        is_null: Sequence[str] = (),
        in_: Optional[Dict[str, Sequence[Any]]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read rows visible to the current principal.

        Args:
            table: Table name
            eq: Column equality filters
            is_null: Columns that must be NULL
            in_: Column membership filters
            order_by: Column to sort ascending by
            limit: Maximum number of rows

        Returns:
            List of row dicts

        Raises:
            StoreError: If the read fails
        """
        raise NotImplementedError

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored."""
        raise NotImplementedError

    @abstractmethod
    async def update(self, table: str, eq: Dict[str, Any], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Update matching rows and return them."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, table: str, eq: Dict[str, Any]) -> int:
        """Delete matching rows and return how many were removed."""
        raise NotImplementedError

    @abstractmethod
    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        """Call a privileged remote procedure."""
        raise NotImplementedError

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        eq: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Subscribe to insert/update/delete events on ``table`` matching ``eq``."""
        raise NotImplementedError

    async def close(self) -> None:
        """Clean up resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
