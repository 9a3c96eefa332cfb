"""Builder mode: topology edits for admins.

Every edit checks the ``edit_rooms`` capability locally first and is never
sent to the store when it is denied. Edits go straight to the authoritative
store; mirrors pick them up through their change feeds like anyone else's.
"""

from typing import Any, List, Optional

from ..access.roles import Capabilities, RoleResolver, workspace_id_for_space
from ..core.errors import InvalidInputError, PermissionDeniedError
from ..core.models import FurnitureItem, Room, RoomConnection
from ..store.base import FURNITURE, ROOM_CONNECTIONS, ROOMS, DataStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


class OfficeBuilder:
    """Room, connection and furniture editor for one space."""

    def __init__(self, store: DataStore, space_id: str, resolver: Optional[RoleResolver] = None) -> None:
        self.store = store
        self.space_id = space_id
        self.resolver = resolver or RoleResolver(store)

    async def _require_edit(self) -> Capabilities:
        principal = await self.store.current_principal()
        if principal is None:
            raise PermissionDeniedError("edit_rooms")
        workspace_id = await workspace_id_for_space(self.store, self.space_id)
        caps = await self.resolver.capabilities(workspace_id, principal.id)
        caps.require("edit_rooms")
        return caps

    async def _room(self, room_id: str) -> Room:
        rows = await self.store.select(ROOMS, eq={"id": room_id, "space_id": self.space_id}, limit=1)
        if not rows:
            raise InvalidInputError(f"Room {room_id} does not belong to space {self.space_id}")
        return Room.model_validate(rows[0])

    # -- rooms -------------------------------------------------------------

    async def add_room(
        self,
        name: str,
        type: str = "open",
        x: float = 0,
        y: float = 0,
        width: float = 200,
        height: float = 200,
        **settings: Any,
    ) -> Room:
        if not name or not name.strip():
            raise InvalidInputError("Room name is required")
        if width <= 0 or height <= 0:
            raise InvalidInputError("Room dimensions must be positive")
        await self._require_edit()
        row = await self.store.insert(ROOMS, {
            "space_id": self.space_id,
            "name": name.strip(),
            "type": type,
            "x": x,
            "y": y,
            "width": width,
            "height": height,
            "is_secret": False,
            "settings": settings,
        })
        logger.info("Room added", extra={"space_id": self.space_id, "room_id": row["id"]})
        return Room.model_validate(row)

    async def update_room(self, room_id: str, **fields: Any) -> Room:
        allowed = set(Room.model_fields) - {"id", "space_id"}
        unknown = set(fields) - allowed
        if unknown:
            raise InvalidInputError(f"Cannot update room fields: {', '.join(sorted(unknown))}")
        await self._require_edit()
        await self._room(room_id)
        rows = await self.store.update(ROOMS, {"id": room_id}, fields)
        return Room.model_validate(rows[0])

    async def delete_room(self, room_id: str) -> None:
        """Delete a room together with its furniture and connections."""
        await self._require_edit()
        await self._room(room_id)
        furniture = await self.store.delete(FURNITURE, {"room_id": room_id})
        connections = 0
        for column in ("room_a_id", "room_b_id"):
            connections += await self.store.delete(ROOM_CONNECTIONS, {"space_id": self.space_id, column: room_id})
        await self.store.delete(ROOMS, {"id": room_id})
        logger.info(
            "Room deleted",
            extra={"room_id": room_id, "furniture_removed": furniture, "connections_removed": connections},
        )

    # -- connections -------------------------------------------------------

    async def connect_rooms(self, room_a_id: str, room_b_id: str, type: str = "door") -> RoomConnection:
        if room_a_id == room_b_id:
            raise InvalidInputError("A room cannot be connected to itself")
        await self._require_edit()
        await self._room(room_a_id)
        await self._room(room_b_id)

        existing = await self.store.select(
            ROOM_CONNECTIONS,
            eq={"space_id": self.space_id},
            in_={"room_a_id": [room_a_id, room_b_id]},
        )
        for row in existing:
            conn = RoomConnection.model_validate(row)
            if {conn.room_a_id, conn.room_b_id} == {room_a_id, room_b_id}:
                return conn

        row = await self.store.insert(ROOM_CONNECTIONS, {
            "space_id": self.space_id,
            "room_a_id": room_a_id,
            "room_b_id": room_b_id,
            "type": type,
            "settings": {},
        })
        return RoomConnection.model_validate(row)

    async def disconnect_rooms(self, connection_id: str) -> int:
        await self._require_edit()
        return await self.store.delete(ROOM_CONNECTIONS, {"id": connection_id, "space_id": self.space_id})

    # -- furniture ---------------------------------------------------------

    async def add_furniture(
        self,
        room_id: str,
        type: str,
        x: float = 0,
        y: float = 0,
        label: Optional[str] = None,
        width: float = 40,
        height: float = 40,
        rotation: float = 0,
    ) -> FurnitureItem:
        await self._require_edit()
        await self._room(room_id)
        row = await self.store.insert(FURNITURE, {
            "room_id": room_id,
            "type": type,
            "label": label,
            "x": x,
            "y": y,
            "width": width,
            "height": height,
            "rotation": rotation,
            "settings": {},
        })
        return FurnitureItem.model_validate(row)

    async def move_furniture(self, item_id: str, x: float, y: float, rotation: Optional[float] = None) -> FurnitureItem:
        await self._require_edit()
        values: dict = {"x": x, "y": y}
        if rotation is not None:
            values["rotation"] = rotation
        rows = await self.store.update(FURNITURE, {"id": item_id}, values)
        if not rows:
            raise InvalidInputError(f"Furniture item {item_id} not found")
        return FurnitureItem.model_validate(rows[0])

    async def remove_furniture(self, item_id: str) -> int:
        await self._require_edit()
        return await self.store.delete(FURNITURE, {"id": item_id})

    async def list_rooms(self) -> List[Room]:
        rows = await self.store.select(ROOMS, eq={"space_id": self.space_id}, order_by="name")
        return [Room.model_validate(r) for r in rows]
