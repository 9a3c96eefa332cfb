"""Datastore adapters.

The authoritative store is an external collaborator. ``DataStore`` is the
port the core talks to; ``InMemoryStore`` is a reference implementation with
atomic invite procedures and a live change feed, ``RestStore`` talks to a
PostgREST-compatible HTTP API.
"""

from .base import DataStore, Subscription, ChangeHandler  # noqa: F401
from .memory import InMemoryStore, MemoryDatabase, seed_demo  # noqa: F401
from .rest import RestStore  # noqa: F401
