"""Idempotent get-or-create of named video rooms.

Room names are canonicalized so equivalent requests always address the same
provider resource. Creation follows a read-create-reread policy: a failed
CREATE is followed by exactly one more GET, which absorbs the case where a
concurrent caller created the room first. There is no other retry of
provider responses; only transport failures (connect errors, timeouts) are
retried, with a ceiling.
"""

import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from ..config.settings import settings
from ..core.errors import ConfigurationError, InvalidInputError, ProviderError, is_transient
from ..core.models import VideoRoom
from ..utils.logging import get_logger

logger = get_logger(__name__)

ROOM_NAME_MAX_LENGTH = 41

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_DASH_RUNS = re.compile(r"-+")


def canonicalize_room_name(raw_name: str) -> str:
    """Lowercase, map anything outside ``[a-z0-9-]`` to ``-``, collapse dashes,
    truncate to 41 characters and trim leading/trailing dashes.

    >>> canonicalize_room_name("My Team Room!!")
    'my-team-room'
    """
    name = _INVALID_CHARS.sub("-", raw_name.lower())
    name = _DASH_RUNS.sub("-", name)
    return name[:ROOM_NAME_MAX_LENGTH].strip("-")


def _error_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"body": response.text}


def _parse_room(data: Dict[str, Any], created: bool) -> VideoRoom:
    exp = (data.get("config") or {}).get("exp")
    return VideoRoom(
        name=data["name"],
        url=data["url"],
        created=created,
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


class VideoRoomProvisioner:
    """Client for the provider's ``/rooms`` API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.daily_api_key
        self.base_url = (base_url or settings.daily_api_url).rstrip("/")
        self.ttl_seconds = ttl_seconds or settings.video_room_ttl_seconds
        self._client = client
        self._rooms_created = 0
        self._race_recoveries = 0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.request_timeout,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
        return self._client

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @retry(
        stop=stop_after_attempt(settings.max_retries),
        wait=wait_exponential(multiplier=settings.retry_backoff_factor, max=settings.retry_max_wait),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.client.request(method, f"{self.base_url}{path}", headers=self._build_headers(), **kwargs)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"Video provider unreachable: {e!r}", extra={"path": path})
            raise ProviderError("Video provider unreachable", details={"error": str(e) or e.__class__.__name__}) from e

    async def get_room(self, name: str) -> Optional[VideoRoom]:
        """Return the room called ``name`` (already canonical), or None on 404."""
        response = await self._request("GET", f"/rooms/{name}")
        if response.status_code == 404:
            return None
        if response.is_success:
            return _parse_room(response.json(), created=False)
        raise ProviderError(
            f"Failed to fetch video room '{name}'",
            status_code=response.status_code,
            details=_error_details(response),
        )

    async def _create_room(self, name: str) -> httpx.Response:
        body = {
            "name": name,
            "properties": {
                "exp": int(time.time()) + self.ttl_seconds,
                "start_audio_off": True,
                "start_video_off": True,
            },
        }
        return await self._request("POST", "/rooms", json=body)

    async def get_or_create_room(self, raw_name: Any) -> VideoRoom:
        """
        Resolve ``raw_name`` to a provider room, creating it if needed.

        Args:
            raw_name: Requested room name, canonicalized before use

        Returns:
            VideoRoom with ``created=True`` only for the caller whose CREATE succeeded

        Raises:
            ConfigurationError: If no provider credential is configured
            InvalidInputError: If ``raw_name`` is missing or canonicalizes to nothing
            ProviderError: On any provider or network failure
        """
        if not self.api_key:
            raise ConfigurationError("Video provider API key not configured (set DAILY_API_KEY)")
        if not isinstance(raw_name, str) or not raw_name.strip():
            raise InvalidInputError("roomName is required")
        name = canonicalize_room_name(raw_name)
        if not name:
            raise InvalidInputError(f"roomName '{raw_name}' has no usable characters")

        existing = await self.get_room(name)
        if existing is not None:
            logger.debug("Video room exists", extra={"room": name})
            return existing

        create_response = await self._create_room(name)
        if create_response.is_success:
            self._rooms_created += 1
            logger.info("Video room created", extra={"room": name})
            return _parse_room(create_response.json(), created=True)

        # Lost a create/create race? Re-read exactly once.
        try:
            winner = await self.get_room(name)
        except ProviderError as e:
            logger.warning(f"Re-read after failed create also failed: {e}", extra={"room": name})
            winner = None
        if winner is not None:
            self._race_recoveries += 1
            logger.info("Video room created concurrently; reusing it", extra={"room": name})
            return winner

        details = _error_details(create_response)
        logger.error(
            "Video room creation failed",
            extra={"room": name, "status": create_response.status_code, "details": details},
        )
        raise ProviderError(
            "Failed to create video room",
            status_code=create_response.status_code,
            details=details,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
