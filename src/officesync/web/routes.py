"""API routes.

``POST /api/video/room`` resolves a room name to a provider video room,
creating it on first use. Error bodies use ``{"error": ..., "details": ...}``
with the status code of the failure class (400 for bad input, 500 for
missing configuration, the provider's own status for provider failures).
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.errors import ConfigurationError, InvalidInputError, ProviderError
from ..utils.logging import get_logger
from ..video.provisioner import VideoRoomProvisioner, canonicalize_room_name

logger = get_logger(__name__)

router = APIRouter()

_provisioner: Optional[VideoRoomProvisioner] = None


def get_provisioner() -> VideoRoomProvisioner:
    """Process-wide provisioner, created on first use."""
    global _provisioner
    if _provisioner is None:
        _provisioner = VideoRoomProvisioner()
    return _provisioner


async def close_provisioner() -> None:
    global _provisioner
    if _provisioner is not None:
        await _provisioner.close()
        _provisioner = None


class RoomRequest(BaseModel):
    """Room request body. ``roomName`` is validated by the provisioner."""

    roomName: Any = None


def _error(status_code: int, message: str, details: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


@router.get("/api/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/video/room/canonical")
async def canonical_name(name: str) -> Dict[str, str]:
    """Preview the canonical form of ``name`` without touching the provider."""
    return {"name": canonicalize_room_name(name)}


@router.post("/api/video/room")
async def get_or_create_room(
    room_req: RoomRequest,
    provisioner: VideoRoomProvisioner = Depends(get_provisioner),
):
    try:
        room = await provisioner.get_or_create_room(room_req.roomName)
    except ConfigurationError as e:
        logger.error(f"Video provider not configured: {e}")
        return _error(500, str(e))
    except InvalidInputError as e:
        return _error(400, str(e))
    except ProviderError as e:
        return _error(e.status_code or 502, str(e), e.details)
    return {"url": room.url, "name": room.name, "created": room.created}
