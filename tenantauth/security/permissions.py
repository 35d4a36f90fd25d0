"""
Static role -> permission table for workspace roles.

Each workspace gets a copy of this table in ``workspace_roles`` when it
is created; authorization decisions always consult the static table.
"""

import enum
from typing import Dict, FrozenSet, List, Union

from pydantic import BaseModel

from tenantauth.db.models import Role


class Permission(str, enum.Enum):
    CHAT_CREATE = "chat:create"
    CHAT_READ = "chat:read"
    CHAT_UPDATE = "chat:update"
    CHAT_DELETE = "chat:delete"
    MODEL_VIEW = "model:view"
    MODEL_USE_FREE = "model:useFree"
    MODEL_USE_PREMIUM = "model:usePremium"
    WORKSPACE_READ = "workspace:read"
    WORKSPACE_UPDATE = "workspace:update"
    WORKSPACE_DELETE = "workspace:delete"
    MEMBER_INVITE = "member:invite"
    MEMBER_REMOVE = "member:remove"
    MEMBER_ROLE_UPDATE = "member:roleUpdate"
    BILLING_VIEW = "billing:view"
    BILLING_UPDATE = "billing:update"
    ADMIN_ACCESS = "admin:access"


# ── Data Models ────────────────────────────────────────


class RoleDefinition(BaseModel):
    """Workspace role with its permissions.

    Attributes:
        name: Role identifier.
        permissions: Granted permission strings.
        description: Human-readable description.
    """

    name: Role
    permissions: List[Permission]
    description: str = ""


_CHAT = [
    Permission.CHAT_CREATE,
    Permission.CHAT_READ,
    Permission.CHAT_UPDATE,
    Permission.CHAT_DELETE,
]
_MODELS = [
    Permission.MODEL_VIEW,
    Permission.MODEL_USE_FREE,
    Permission.MODEL_USE_PREMIUM,
]

DEFAULT_ROLES: Dict[Role, RoleDefinition] = {
    Role.OWNER: RoleDefinition(
        name=Role.OWNER,
        permissions=list(Permission),
        description="Full control of the workspace, including deletion and billing",
    ),
    Role.ADMIN: RoleDefinition(
        name=Role.ADMIN,
        permissions=[
            p
            for p in Permission
            if p not in (Permission.WORKSPACE_DELETE, Permission.BILLING_UPDATE)
        ],
        description="Manages members, models and settings",
    ),
    Role.EDITOR: RoleDefinition(
        name=Role.EDITOR,
        permissions=_CHAT + _MODELS + [Permission.WORKSPACE_READ],
        description="Creates and edits chats, uses all enabled models",
    ),
    Role.VIEWER: RoleDefinition(
        name=Role.VIEWER,
        permissions=[
            Permission.CHAT_READ,
            Permission.MODEL_VIEW,
            Permission.MODEL_USE_FREE,
            Permission.WORKSPACE_READ,
        ],
        description="Read-only access and free models",
    ),
}

_PERMISSION_SETS: Dict[Role, FrozenSet[Permission]] = {
    role: frozenset(definition.permissions) for role, definition in DEFAULT_ROLES.items()
}


def permissions_for(role: Union[Role, str]) -> FrozenSet[Permission]:
    """Return the permission set of ``role``; unknown roles get none."""
    try:
        return _PERMISSION_SETS[Role(role)]
    except ValueError:
        return frozenset()


def has_permission(role: Union[Role, str], permission: Union[Permission, str]) -> bool:
    try:
        return Permission(permission) in permissions_for(role)
    except ValueError:
        return False
