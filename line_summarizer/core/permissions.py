"""
Role-based access control table.

Roles are a closed enum and every permission string is a member of the
Permission enum. The only way to ask "may this role do X" is
role_has_permission(); handlers never compare role strings themselves.
"""

from enum import Enum
from typing import Dict, FrozenSet


class Role(str, Enum):
    """Role of a user inside one organization."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"

    @property
    def level(self) -> int:
        return ROLE_LEVELS[self]

    def outranks(self, other: "Role") -> bool:
        return self.level > other.level


ROLE_LEVELS: Dict[Role, int] = {
    Role.OWNER: 50,
    Role.ADMIN: 40,
    Role.MEMBER: 30,
    Role.VIEWER: 20,
}


class Permission(str, Enum):
    """Organization-scoped permission strings: org:<resource>:<action>."""

    # Settings / billing
    SETTINGS_VIEW = "org:settings:view"
    SETTINGS_UPDATE = "org:settings:update"
    BILLING_VIEW = "org:billing:view"
    BILLING_MANAGE = "org:billing:manage"

    # Members
    MEMBERS_LIST = "org:members:list"
    MEMBERS_INVITE = "org:members:invite"
    MEMBERS_REMOVE = "org:members:remove"
    MEMBERS_ROLES = "org:members:roles"

    # Invite codes
    INVITE_CODES_LIST = "org:invite_codes:list"
    INVITE_CODES_CREATE = "org:invite_codes:create"
    INVITE_CODES_DISABLE = "org:invite_codes:disable"

    # Rooms (LINE groups and direct chats)
    GROUPS_LIST = "org:groups:list"
    GROUPS_VIEW = "org:groups:view"
    GROUPS_SETTINGS = "org:groups:settings"
    GROUPS_ARCHIVE = "org:groups:archive"

    # Sessions
    SESSIONS_LIST = "org:sessions:list"
    SESSIONS_VIEW = "org:sessions:view"
    SESSIONS_CLOSE = "org:sessions:close"
    SESSIONS_DELETE = "org:sessions:delete"
    SESSIONS_EXPORT = "org:sessions:export"

    # Messages
    MESSAGES_LIST = "org:messages:list"
    MESSAGES_VIEW = "org:messages:view"
    MESSAGES_SEARCH = "org:messages:search"

    # Summaries
    SUMMARIES_LIST = "org:summaries:list"
    SUMMARIES_VIEW = "org:summaries:view"
    SUMMARIES_GENERATE = "org:summaries:generate"
    SUMMARIES_EDIT = "org:summaries:edit"
    SUMMARIES_DELETE = "org:summaries:delete"

    # Analytics / audit
    ANALYTICS_VIEW = "org:analytics:view"
    ANALYTICS_EXPORT = "org:analytics:export"
    AUDIT_VIEW = "org:audit:view"


ALL_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)

_ADMIN_EXCLUDED = {Permission.BILLING_MANAGE, Permission.SETTINGS_UPDATE}

_VIEWER_PERMISSIONS = frozenset({
    Permission.GROUPS_LIST,
    Permission.GROUPS_VIEW,
    Permission.SESSIONS_LIST,
    Permission.SESSIONS_VIEW,
    Permission.MESSAGES_LIST,
    Permission.MESSAGES_VIEW,
    Permission.SUMMARIES_LIST,
    Permission.SUMMARIES_VIEW,
})

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.OWNER: ALL_PERMISSIONS,
    Role.ADMIN: frozenset(
        p for p in Permission
        if p not in _ADMIN_EXCLUDED and not p.value.endswith(":delete")
    ),
    Role.MEMBER: _VIEWER_PERMISSIONS | {
        Permission.MESSAGES_SEARCH,
        Permission.SUMMARIES_GENERATE,
        Permission.ANALYTICS_VIEW,
    },
    Role.VIEWER: _VIEWER_PERMISSIONS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS[role]


def permissions_for(role: Role) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS[role]
