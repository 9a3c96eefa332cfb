"""Core domain models for workspaces, invites and office topology."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Workspace roles, totally ordered by :data:`ROLE_HIERARCHY`."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    GUEST = "guest"
    VIEWER = "viewer"

    @property
    def level(self) -> int:
        return ROLE_HIERARCHY[self]


ROLE_HIERARCHY: Dict[Role, int] = {
    Role.OWNER: 4,
    Role.ADMIN: 3,
    Role.MEMBER: 2,
    Role.GUEST: 1,
    Role.VIEWER: 0,
}


class Principal(BaseModel):
    """The authenticated user as reported by the identity provider."""
    id: str
    email: Optional[str] = None


class Workspace(BaseModel):
    """Top-level tenant container."""
    id: str
    name: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class WorkspaceMember(BaseModel):
    """A user's role grant within a workspace. Soft-deleted via ``removed_at``."""
    id: str
    workspace_id: str
    user_id: str
    role: Role
    invited_by: Optional[str] = None
    joined_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.removed_at is None


class InviteLink(BaseModel):
    """Bounded-use, time-limited token granting a role on acceptance."""

    id: str
    token: str
    workspace_id: str
    role: Role = Role.MEMBER
    invited_by: Optional[str] = None
    invited_at: Optional[datetime] = None
    label: Optional[str] = None

    # None means the link never expires / has unlimited uses.
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = Field(None, ge=1)
    use_count: int = Field(0, ge=0)

    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.use_count >= self.max_uses


class InviteInfo(BaseModel):
    """Result of the privileged ``get_invite_info`` lookup."""
    found: bool
    workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
    role: Optional[Role] = None
    is_expired: bool = False
    is_revoked: bool = False
    is_exhausted: bool = False


class AcceptResult(BaseModel):
    """Result of the atomic ``accept_invite_link`` procedure."""
    success: bool
    workspace_id: Optional[str] = None
    already_member: bool = False
    error: Optional[str] = None
    code: Optional[str] = None


class Space(BaseModel):
    """A spatial office instance belonging to a workspace."""
    id: str
    workspace_id: str
    name: Optional[str] = None
    created_at: Optional[datetime] = None


class Room(BaseModel):
    id: str
    space_id: str
    name: str = "Room"
    type: str = "open"
    x: float = 0
    y: float = 0
    width: float = 200
    height: float = 200
    is_secret: bool = False
    settings: Dict[str, Any] = Field(default_factory=dict)


class RoomConnection(BaseModel):
    """Undirected adjacency between two rooms of the same space."""
    id: str
    space_id: str
    room_a_id: str
    room_b_id: str
    type: str = "door"
    x_a: float = 0
    y_a: float = 0
    x_b: float = 0
    y_b: float = 0
    settings: Dict[str, Any] = Field(default_factory=dict)

    def other_side(self, room_id: str) -> Optional[str]:
        if room_id == self.room_a_id:
            return self.room_b_id
        if room_id == self.room_b_id:
            return self.room_a_id
        return None


class FurnitureItem(BaseModel):
    id: str
    room_id: str
    type: str
    label: Optional[str] = None
    x: float = 0
    y: float = 0
    width: float = 40
    height: float = 40
    rotation: float = 0
    settings: Dict[str, Any] = Field(default_factory=dict)


class VideoRoom(BaseModel):
    """Provider-owned video room, mirrored for the current session only."""
    name: str
    url: str
    created: bool = False
    expires_at: Optional[datetime] = None


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row-level change notification from the datastore's change feed."""
    table: str
    type: ChangeType
    record: Dict[str, Any] = Field(default_factory=dict)
    old_record: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)


class OfficeSnapshot(BaseModel):
    """One complete, mutually consistent fetch cycle of a space's topology."""

    space_id: str
    cycle: int
    rooms: List[Room] = Field(default_factory=list)
    connections: List[RoomConnection] = Field(default_factory=list)
    furniture: List[FurnitureItem] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=utcnow)

    def room(self, room_id: str) -> Optional[Room]:
        return next((r for r in self.rooms if r.id == room_id), None)

    def furniture_in(self, room_id: str) -> List[FurnitureItem]:
        return [f for f in self.furniture if f.room_id == room_id]

    def neighbours(self, room_id: str) -> List[str]:
        """Ids of rooms directly connected to ``room_id``."""
        result: List[str] = []
        for conn in self.connections:
            other = conn.other_side(room_id)
            if other is not None and other not in result:
                result.append(other)
        return result
