"""Invite links and the invite redemption flow."""

from .acceptor import InviteAcceptor, InviteOutcome, InviteState, TERMINAL_STATES  # noqa: F401
from .links import InviteLinkService, EXPIRY_PRESETS, invite_url  # noqa: F401
