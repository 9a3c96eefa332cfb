"""Video room provisioning against an external provider."""

from .provisioner import VideoRoomProvisioner, canonicalize_room_name, ROOM_NAME_MAX_LENGTH  # noqa: F401
