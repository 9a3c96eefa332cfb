"""
Workspace synchronization and access core for a virtual office.

The package keeps four pieces of client-side logic honest against an
authoritative remote store:

- ``access``: role resolution with an ownership fallback and coarse,
  threshold-based capabilities
- ``invites``: the invite redemption state machine and invite link management
- ``mirror``: a consistent local snapshot of a space's rooms, connections and
  furniture, kept live by invalidate-and-refetch
- ``video``: idempotent get-or-create of provider video rooms

Basic Usage:
    >>> from officesync.store import InMemoryStore
    >>> from officesync.mirror import OfficeSession
    >>>
    >>> async with OfficeSession(store) as session:
    ...     mirror = await session.enter(space_id)
    ...     print(mirror.snapshot.rooms)
"""

__version__ = "0.1.0"
