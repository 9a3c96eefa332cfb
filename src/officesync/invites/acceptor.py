"""Invite redemption state machine.

States and the transitions allowed between them::

    LOADING    -> NEEDS_AUTH | ACCEPTING | ERROR
    NEEDS_AUTH -> LOADING                 (resume after sign-in)
    ACCEPTING  -> SUCCESS | ALREADY_MEMBER | ERROR

SUCCESS, ALREADY_MEMBER and ERROR are terminal. Validation runs in a fixed
order (expired, revoked, exhausted) and the first failing condition wins.
The authoritative side re-validates inside the atomic accept procedure, so
an invite observed as valid here can still be refused there.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ValidationError

from ..config.settings import settings
from ..core.errors import INVITE_MESSAGES, InviteError, InviteFailure, StoreError
from ..core.models import AcceptResult, InviteInfo, Role
from ..store.base import RPC_ACCEPT_INVITE_LINK, RPC_GET_INVITE_INFO, SPACES, DataStore
from ..utils.logging import get_logger

logger = get_logger(__name__)

GENERIC_LANDING = "/office"


class InviteState(str, Enum):
    LOADING = "loading"
    NEEDS_AUTH = "needs_auth"
    ACCEPTING = "accepting"
    SUCCESS = "success"
    ALREADY_MEMBER = "already_member"
    ERROR = "error"


TERMINAL_STATES: Set[InviteState] = {InviteState.SUCCESS, InviteState.ALREADY_MEMBER, InviteState.ERROR}

TRANSITIONS: Dict[InviteState, Set[InviteState]] = {
    InviteState.LOADING: {InviteState.NEEDS_AUTH, InviteState.ACCEPTING, InviteState.ERROR},
    InviteState.NEEDS_AUTH: {InviteState.LOADING},
    InviteState.ACCEPTING: {InviteState.SUCCESS, InviteState.ALREADY_MEMBER, InviteState.ERROR},
}


class InviteOutcome(BaseModel):
    """What the presentation layer needs to render the current state."""

    token: str
    state: InviteState = InviteState.LOADING
    workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
    role: Optional[Role] = None
    landing_space_id: Optional[str] = None
    failure: Optional[InviteFailure] = None
    error: Optional[str] = None

    @property
    def landing_path(self) -> Optional[str]:
        if self.state not in (InviteState.SUCCESS, InviteState.ALREADY_MEMBER):
            return None
        if self.landing_space_id:
            return f"{GENERIC_LANDING}/{self.landing_space_id}"
        return GENERIC_LANDING


def validation_failure(info: InviteInfo) -> Optional[InviteFailure]:
    """First terminal condition of ``info``, checked expired -> revoked -> exhausted."""
    if not info.found:
        return InviteFailure.NOT_FOUND
    if info.is_expired:
        return InviteFailure.EXPIRED
    if info.is_revoked:
        return InviteFailure.REVOKED
    if info.is_exhausted:
        return InviteFailure.EXHAUSTED
    return None


TransitionListener = Callable[[InviteState, InviteOutcome], None]


class InviteAcceptor:
    """
    Drives one invite token from lookup to membership.

    A run stops either at NEEDS_AUTH (call :meth:`resume` once the user has
    signed in) or at a terminal state. Nothing is retried automatically:
    starting a new acceptor with the same token restarts from LOADING.

    Example:
        >>> async with InviteAcceptor(store, token) as acceptor:
        ...     outcome = await acceptor.run()
        ...     if outcome.state is InviteState.NEEDS_AUTH:
        ...         ...  # sign in, then
        ...         outcome = await acceptor.resume()
    """

    def __init__(
        self,
        store: DataStore,
        token: str,
        timeout: Optional[float] = None,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self.store = store
        self.token = token
        self.timeout = timeout or settings.request_timeout
        self.outcome = InviteOutcome(token=token)
        self.history: List[InviteState] = [InviteState.LOADING]
        self.cancelled = False
        self._on_transition = on_transition
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> InviteState:
        return self.outcome.state

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, new_state: InviteState) -> None:
        current = self.outcome.state
        if new_state not in TRANSITIONS.get(current, set()):
            raise RuntimeError(f"Illegal invite transition {current.value} -> {new_state.value}")
        self.outcome.state = new_state
        self.history.append(new_state)
        logger.info(
            f"Invite {current.value} -> {new_state.value}",
            extra={"token": self.token[:8], "workspace_id": self.outcome.workspace_id},
        )
        if self._on_transition is not None:
            self._on_transition(new_state, self.outcome)

    def _fail(self, failure: InviteFailure, message: Optional[str] = None) -> InviteOutcome:
        self.outcome.failure = failure
        self.outcome.error = message or INVITE_MESSAGES[failure]
        self._transition(InviteState.ERROR)
        return self.outcome

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise InviteError(InviteFailure.TIMEOUT) from e

    async def run(self) -> InviteOutcome:
        """Run from LOADING until NEEDS_AUTH or a terminal state."""
        if self.state is not InviteState.LOADING:
            raise RuntimeError(f"Cannot run invite flow from state {self.state.value}")
        if self.cancelled:
            raise asyncio.CancelledError()
        self._task = asyncio.create_task(self._flow())
        try:
            return await self._task
        finally:
            self._task = None

    async def resume(self) -> InviteOutcome:
        """Restart from LOADING with the same token after authentication."""
        if self.state is not InviteState.NEEDS_AUTH:
            raise RuntimeError(f"Cannot resume invite flow from state {self.state.value}")
        self._transition(InviteState.LOADING)
        return await self.run()

    async def cancel(self) -> None:
        """Abandon the flow; an in-flight step is cancelled and never applied."""
        self.cancelled = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("Invite flow cancelled", extra={"token": self.token[:8]})

    async def __aenter__(self) -> "InviteAcceptor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self.done:
            await self.cancel()

    async def _flow(self) -> InviteOutcome:
        if not self.token or not self.token.strip():
            return self._fail(InviteFailure.NOT_FOUND)

        # Step 1: privileged lookup (the invitee cannot see the row yet).
        try:
            raw = await self._call(self.store.rpc(RPC_GET_INVITE_INFO, {"p_token": self.token}))
            info = InviteInfo.model_validate(raw or {"found": False})
        except InviteError as e:
            return self._fail(e.failure)
        except StoreError as e:
            logger.warning(f"Invite lookup failed: {e}", extra={"token": self.token[:8]})
            return self._fail(InviteFailure.LOOKUP_FAILED)
        except ValidationError as e:
            logger.warning(f"Malformed invite info: {e}", extra={"token": self.token[:8]})
            return self._fail(InviteFailure.LOOKUP_FAILED)

        self.outcome.workspace_id = info.workspace_id
        self.outcome.workspace_name = info.workspace_name
        self.outcome.role = info.role

        # Step 2: expired, then revoked, then exhausted.
        failure = validation_failure(info)
        if failure is not None:
            return self._fail(failure)

        # Step 3: authentication gate.
        try:
            principal = await self._call(self.store.current_principal())
        except InviteError as e:
            return self._fail(e.failure)
        except StoreError as e:
            logger.warning(f"Identity lookup failed: {e}")
            return self._fail(InviteFailure.LOOKUP_FAILED, "Could not determine the signed-in user.")
        if principal is None:
            self._transition(InviteState.NEEDS_AUTH)
            return self.outcome

        # Step 4: atomic accept on the authoritative side.
        self._transition(InviteState.ACCEPTING)
        try:
            raw = await self._call(self.store.rpc(RPC_ACCEPT_INVITE_LINK, {"p_token": self.token}))
            result = AcceptResult.model_validate(raw or {"success": False})
        except InviteError as e:
            return self._fail(e.failure)
        except StoreError as e:
            detail = e.detail.get("message") if isinstance(e.detail, dict) else e.detail
            return self._fail(InviteFailure.ACCEPT_FAILED, str(detail) if detail else None)
        except ValidationError as e:
            logger.warning(f"Malformed accept result: {e}")
            return self._fail(InviteFailure.ACCEPT_FAILED)

        if not result.success:
            try:
                failure = InviteFailure(result.code) if result.code else InviteFailure.ACCEPT_FAILED
            except ValueError:
                failure = InviteFailure.ACCEPT_FAILED
            return self._fail(failure, result.error)

        workspace_id = result.workspace_id or info.workspace_id
        self.outcome.workspace_id = workspace_id

        # Step 5: landing space.
        self.outcome.landing_space_id = await self._resolve_landing(workspace_id)
        self._transition(InviteState.ALREADY_MEMBER if result.already_member else InviteState.SUCCESS)
        return self.outcome

    async def _resolve_landing(self, workspace_id: Optional[str]) -> Optional[str]:
        if not workspace_id:
            return None
        try:
            rows = await self._call(
                self.store.select(SPACES, eq={"workspace_id": workspace_id}, order_by="created_at", limit=1)
            )
        except (InviteError, StoreError) as e:
            # Membership already exists; fall back to the generic workspace view.
            logger.warning(f"Landing space lookup failed: {e}", extra={"workspace_id": workspace_id})
            return None
        return rows[0]["id"] if rows else None
