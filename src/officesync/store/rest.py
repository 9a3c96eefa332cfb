"""PostgREST-compatible datastore adapter over HTTP.

Reads and writes go through ``/rest/v1/<table>`` with PostgREST filter
syntax, privileged procedures through ``/rest/v1/rpc/<name>`` and the
current principal through ``/auth/v1/user``. The change feed is synthesized
by polling each subscribed table and diffing rows by id.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic_core import to_jsonable_python
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from ..config.settings import settings
from ..core.errors import ConfigurationError, StoreError, is_transient
from ..core.models import ChangeEvent, ChangeType, Principal
from ..utils.logging import get_logger
from .base import ChangeHandler, DataStore, Subscription, dispatch

logger = get_logger(__name__)


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(to_jsonable_python(value))


def build_filters(
    eq: Optional[Dict[str, Any]] = None,
    is_null: Sequence[str] = (),
    in_: Optional[Dict[str, Sequence[Any]]] = None,
) -> List[tuple]:
    """Translate filter arguments into PostgREST query parameters."""
    params: List[tuple] = []
    for column, value in (eq or {}).items():
        params.append((column, "is.null" if value is None else f"eq.{_literal(value)}"))
    for column in is_null:
        params.append((column, "is.null"))
    for column, values in (in_ or {}).items():
        quoted = ",".join(f'"{_literal(v)}"' for v in values)
        params.append((column, f"in.({quoted})"))
    return params


class PollingSubscription(Subscription):
    """Emits change events by diffing successive reads of a table."""

    def __init__(self, store: "RestStore", table: str, handler: ChangeHandler, eq: Optional[Dict[str, Any]], interval: float) -> None:
        super().__init__(table, eq)
        self.handler = handler
        self.interval = interval
        self._store = store
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._rows = await self._read()
        self._task = asyncio.create_task(self._poll_loop())

    async def _read(self) -> Dict[str, Dict[str, Any]]:
        rows = await self._store.select(self.table, eq=self.eq)
        return {str(r.get("id")): r for r in rows}

    def _diff(self, current: Dict[str, Dict[str, Any]]) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        for row_id, row in current.items():
            previous = self._rows.get(row_id)
            if previous is None:
                events.append(ChangeEvent(table=self.table, type=ChangeType.INSERT, record=row))
            elif previous != row:
                events.append(ChangeEvent(table=self.table, type=ChangeType.UPDATE, record=row, old_record=previous))
        for row_id, row in self._rows.items():
            if row_id not in current:
                events.append(ChangeEvent(table=self.table, type=ChangeType.DELETE, old_record=row))
        return events

    async def _poll_loop(self) -> None:
        while self.active:
            await asyncio.sleep(self.interval)
            try:
                current = await self._read()
            except StoreError as e:
                logger.warning(f"Change-feed poll failed: {e}", extra={"table": self.table})
                continue
            events = self._diff(current)
            self._rows = current
            for event in events:
                if not self.active:
                    return
                try:
                    await dispatch(self.handler, event)
                except Exception:
                    logger.exception("Change handler failed", extra={"table": self.table})

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.debug("Stopped polling", extra={"table": self.table})


class RestStore(DataStore):
    """Datastore client for a PostgREST/Supabase-style HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        poll_interval: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or settings.store_url or "").rstrip("/")
        if not self.base_url:
            raise ConfigurationError("Datastore URL not configured (set STORE_URL)")
        self.api_key = api_key or settings.store_api_key
        self.access_token = access_token or settings.store_access_token
        self.poll_interval = poll_interval or settings.store_poll_interval
        self.client = client or httpx.AsyncClient(
            timeout=settings.request_timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )
        self._subscriptions: List[PollingSubscription] = []

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = self.access_token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    @retry(
        stop=stop_after_attempt(settings.max_retries),
        wait=wait_exponential(multiplier=settings.retry_backoff_factor, max=settings.retry_max_wait),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._build_headers(), **kwargs.pop("headers", {})}
        return await self.client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error(f"{operation}: transport error {e!r}")
            raise StoreError(operation, str(e) or e.__class__.__name__) from e
        if response.status_code >= 400:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            logger.warning(f"{operation}: HTTP {response.status_code}", extra={"detail": detail})
            raise StoreError(operation, detail, status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"{operation}: unreadable response body", extra={"status": response.status_code})
            raise StoreError(operation, f"invalid JSON: {e}", status_code=response.status_code) from e

    async def current_principal(self) -> Optional[Principal]:
        if not self.access_token:
            return None
        try:
            data = await self._request("get user", "GET", "/auth/v1/user")
        except StoreError as e:
            if e.status_code in (401, 403):
                return None
            raise
        return Principal(id=data["id"], email=data.get("email"))

    async def select(self, table, eq=None, is_null=(), in_=None, order_by=None, limit=None):
        params = [("select", "*"), *build_filters(eq, is_null, in_)]
        if order_by:
            params.append(("order", f"{order_by}.asc"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._request(f"select {table}", "GET", f"/rest/v1/{table}", params=params) or []

    async def insert(self, table, row):
        rows = await self._request(
            f"insert {table}", "POST", f"/rest/v1/{table}",
            json=to_jsonable_python(row),
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else dict(row)

    async def update(self, table, eq, values):
        return await self._request(
            f"update {table}", "PATCH", f"/rest/v1/{table}",
            params=build_filters(eq),
            json=to_jsonable_python(values),
            headers={"Prefer": "return=representation"},
        ) or []

    async def delete(self, table, eq):
        rows = await self._request(
            f"delete {table}", "DELETE", f"/rest/v1/{table}",
            params=build_filters(eq),
            headers={"Prefer": "return=representation"},
        )
        return len(rows or [])

    async def rpc(self, name, params):
        return await self._request(f"rpc {name}", "POST", f"/rest/v1/rpc/{name}", json=to_jsonable_python(params))

    async def subscribe(self, table, handler, eq=None):
        sub = PollingSubscription(self, table, handler, eq, self.poll_interval)
        await sub.start()
        self._subscriptions.append(sub)
        logger.debug("Polling subscription started", extra={"table": table, "filter": sub.eq})
        return sub

    async def close(self) -> None:
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions.clear()
        await self.client.aclose()
