"""Client-side mirror of a space's rooms, connections and furniture.

Consistency strategy is invalidate-and-refetch: any insert/update/delete on
any of the three watched tables re-runs a full :meth:`StateMirror.sync`
instead of patching the local copy. Each sync is one *cycle*:

* rooms are read for the space, then furniture for the union of the room
  ids (dependent fan-out); connections are read concurrently with that chain;
* the snapshot is replaced only when all three reads succeed, and only if no
  newer cycle has been applied meanwhile, so the mirror never holds a mix of
  two cycles;
* on failure the previous snapshot stays in place and each failed collection
  is reported on its own in a :class:`SyncError`.

Bursts of change events are coalesced (one refetch running, at most one
pending), rate limited, and failed refetches retried with a ceiling.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.settings import settings
from ..core.errors import StoreError, SyncError
from ..core.models import ChangeEvent, FurnitureItem, OfficeSnapshot, Room, RoomConnection
from ..store.base import FURNITURE, ROOM_CONNECTIONS, ROOMS, DataStore, Subscription
from ..utils.logging import get_logger
from ..utils.rate_limit import RateLimiter

logger = get_logger(__name__)

SnapshotListener = Callable[[OfficeSnapshot], None]

# Failures that are reported per collection instead of aborting the cycle.
_FETCH_ERRORS = (StoreError, asyncio.TimeoutError, ValidationError)


class StateMirror:
    """
    Live, consistent snapshot of one space.

    Lifetime is scoped: :meth:`start` subscribes and performs the first sync,
    :meth:`stop` releases the subscriptions and cancels in-flight work. No
    result is applied after :meth:`stop`.

    Example:
        >>> async with StateMirror(store, space_id) as mirror:
        ...     print(len(mirror.snapshot.rooms))
    """

    def __init__(
        self,
        store: DataStore,
        space_id: str,
        timeout: Optional[float] = None,
        refetch_rate: Optional[float] = None,
        refetch_burst: Optional[int] = None,
        max_refetch_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ) -> None:
        if not space_id:
            raise ValueError("space_id is required")
        self.store = store
        self.space_id = space_id
        self.timeout = timeout or settings.request_timeout
        self.max_refetch_retries = max_refetch_retries or settings.mirror_max_refetch_retries
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.retry_backoff_factor

        self.snapshot: Optional[OfficeSnapshot] = None
        self.last_error: Optional[SyncError] = None
        self.events_seen = 0
        self.cycles_applied = 0

        self._limiter = RateLimiter(
            rate=refetch_rate or settings.mirror_refetch_rate,
            burst=refetch_burst or settings.mirror_refetch_burst,
        )
        self._cycle = 0
        self._applied_cycle = 0
        self._subscriptions: List[Subscription] = []
        self._listeners: List[SnapshotListener] = []
        self._inflight: Set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._dirty = False
        self._started = False
        self._closed = False

    # -- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._started and not self._closed

    async def start(self) -> OfficeSnapshot:
        """Subscribe to the three change feeds, then run the first sync.

        Subscriptions are opened before the first read so that edits racing
        with it still trigger a refetch. If the first sync fails (after the
        retry ceiling) the error is raised but the mirror stays subscribed. If a
        feed cannot be opened, the ones already opened are released first.
        """
        if self._started:
            raise RuntimeError("StateMirror already started")
        self._started = True
        feeds = [
            (ROOMS, {"space_id": self.space_id}),
            (ROOM_CONNECTIONS, {"space_id": self.space_id}),
            # Unfiltered: a furniture row's room may not be known locally yet.
            (FURNITURE, None),
        ]
        try:
            for table, eq in feeds:
                self._subscriptions.append(await self.store.subscribe(table, self._on_change, eq=eq))
        except BaseException:
            logger.error("Subscribing failed; releasing opened feeds", extra={"space_id": self.space_id})
            await self._release_subscriptions()
            raise
        logger.info("Mirror started", extra={"space_id": self.space_id})
        return await self._sync_with_retry()

    async def stop(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._release_subscriptions()

        pending = [t for t in (self._refresh_task, *self._inflight) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._refresh_task = None
        logger.info("Mirror stopped", extra={"space_id": self.space_id, "cycles_applied": self.cycles_applied})

    async def _release_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            await sub.unsubscribe()

    async def __aenter__(self) -> "StateMirror":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with every applied snapshot. Returns a remover."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # -- sync --------------------------------------------------------------

    async def sync(self) -> OfficeSnapshot:
        """
        Run one full fetch cycle.

        Concurrent calls are safe: each gets its own cycle number and only a
        cycle newer than the applied one replaces the snapshot.

        Returns:
            The snapshot fetched by this cycle (which may be discarded as stale)

        Raises:
            SyncError: If any collection failed; the previous snapshot is kept
            RuntimeError: If the mirror has been stopped
        """
        if self._closed:
            raise RuntimeError("StateMirror is stopped")
        self._cycle += 1
        task = asyncio.create_task(self._run_cycle(self._cycle))
        self._inflight.add(task)
        try:
            return await task
        finally:
            self._inflight.discard(task)

    async def _read(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        return await asyncio.wait_for(self.store.select(table, **filters), timeout=self.timeout)

    async def _fetch_rooms_and_furniture(self, errors: Dict[str, BaseException]) -> Optional[tuple]:
        try:
            rooms = [Room.model_validate(r) for r in await self._read(ROOMS, eq={"space_id": self.space_id})]
        except _FETCH_ERRORS as e:
            errors["rooms"] = e
            return None
        room_ids = [r.id for r in rooms]
        if not room_ids:
            return rooms, []
        try:
            rows = await self._read(FURNITURE, in_={"room_id": room_ids})
            furniture = [FurnitureItem.model_validate(f) for f in rows]
        except _FETCH_ERRORS as e:
            errors["furniture"] = e
            return None
        return rooms, furniture

    async def _fetch_connections(self, errors: Dict[str, BaseException]) -> Optional[List[RoomConnection]]:
        try:
            rows = await self._read(ROOM_CONNECTIONS, eq={"space_id": self.space_id})
            return [RoomConnection.model_validate(c) for c in rows]
        except _FETCH_ERRORS as e:
            errors["connections"] = e
            return None

    async def _run_cycle(self, cycle: int) -> OfficeSnapshot:
        errors: Dict[str, BaseException] = {}
        rooms_part, connections = await asyncio.gather(
            self._fetch_rooms_and_furniture(errors),
            self._fetch_connections(errors),
        )
        if errors:
            self.last_error = SyncError(self.space_id, errors)
            logger.warning(
                f"Sync cycle {cycle} failed; keeping previous snapshot",
                extra={"space_id": self.space_id, "failed": sorted(errors)},
            )
            raise self.last_error

        rooms, furniture = rooms_part
        room_ids = {r.id for r in rooms}
        # A room deleted between the reads can leave a dangling connection.
        valid = [c for c in connections if c.room_a_id in room_ids and c.room_b_id in room_ids]
        if len(valid) != len(connections):
            logger.debug(f"Dropped {len(connections) - len(valid)} dangling connections", extra={"space_id": self.space_id})

        snapshot = OfficeSnapshot(
            space_id=self.space_id,
            cycle=cycle,
            rooms=rooms,
            connections=valid,
            furniture=furniture,
        )
        self._apply(snapshot)
        return snapshot

    def _apply(self, snapshot: OfficeSnapshot) -> None:
        if self._closed:
            logger.debug("Discarding cycle after stop", extra={"cycle": snapshot.cycle})
            return
        if snapshot.cycle <= self._applied_cycle:
            logger.debug(
                f"Discarding stale cycle {snapshot.cycle} (applied {self._applied_cycle})",
                extra={"space_id": self.space_id},
            )
            return
        self.snapshot = snapshot
        self._applied_cycle = snapshot.cycle
        self.last_error = None
        self.cycles_applied += 1
        logger.debug(
            f"Applied cycle {snapshot.cycle}",
            extra={
                "space_id": self.space_id,
                "rooms": len(snapshot.rooms),
                "connections": len(snapshot.connections),
                "furniture": len(snapshot.furniture),
            },
        )
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed", extra={"space_id": self.space_id, "cycle": snapshot.cycle})

    # -- invalidation ------------------------------------------------------

    def _on_change(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self.events_seen += 1
        logger.debug(f"{event.type.value} on {event.table}; invalidating", extra={"space_id": self.space_id})
        self.invalidate()

    def invalidate(self) -> None:
        """Mark the mirror stale and make sure a refetch is scheduled."""
        if self._closed:
            return
        self._dirty = True
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while self._dirty and not self._closed:
            self._dirty = False
            if self._limiter.available < 1:
                logger.debug("Refetch throttled", extra={"space_id": self.space_id, "tokens": round(self._limiter.available, 3)})
            await self._limiter.acquire()
            try:
                await self._sync_with_retry()
            except SyncError as e:
                logger.error(
                    f"Refetch abandoned after {self.max_refetch_retries} attempts: {e}",
                    extra={"space_id": self.space_id},
                )

    async def _sync_with_retry(self) -> OfficeSnapshot:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_refetch_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, max=settings.retry_max_wait),
            retry=retry_if_exception_type(SyncError),
            reraise=True,
        ):
            with attempt:
                return await self.sync()
        raise AssertionError("unreachable")

    async def wait_idle(self) -> None:
        """Wait until no refetch is running or pending."""
        while True:
            task = self._refresh_task
            if task is None or task.done():
                return
            await asyncio.wait({task})

    def __repr__(self) -> str:
        cycle = self.snapshot.cycle if self.snapshot else None
        return f"<StateMirror space={self.space_id} cycle={cycle} running={self.running}>"
