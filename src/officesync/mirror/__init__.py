"""Office topology mirroring.

``StateMirror`` keeps a consistent local snapshot of one space using
invalidate-and-refetch, ``OfficeSession`` owns the mirror of the space the
user is in, and ``OfficeBuilder`` performs capability-gated edits.
"""

from .state import StateMirror  # noqa: F401
from .session import OfficeSession  # noqa: F401
from .builder import OfficeBuilder  # noqa: F401
