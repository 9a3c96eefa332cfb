"""Role resolution and capability gating for workspaces."""

from .roles import (  # noqa: F401
    CAPABILITIES,
    Capabilities,
    RoleResolver,
    WorkspaceRole,
    invitable_roles,
    role_level,
    workspace_id_for_space,
)
