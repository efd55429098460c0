"""Scope hierarchy, caller identity and ownership rules.

Tab rows live at one of four scopes.  Resolution walks them in the order
given by :data:`SCOPE_ORDER`; a more specific scope always shadows a less
specific one for the same tab key.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from clinictabs.errors import ForbiddenError, TabValidationError


class TabScope(str, enum.Enum):
    """Audience tier a tab row applies to."""

    SYSTEM = "system"
    ORGANIZATION = "organization"
    ROLE = "role"
    USER = "user"

    @property
    def priority(self) -> int:
        return SCOPE_PRIORITY[self]


SCOPE_ORDER = (TabScope.SYSTEM, TabScope.ORGANIZATION, TabScope.ROLE, TabScope.USER)
SCOPE_PRIORITY: Dict[TabScope, int] = {scope: index + 1 for index, scope in enumerate(SCOPE_ORDER)}

# Column that carries the owner id for each non-system scope.
OWNER_COLUMNS: Dict[TabScope, str] = {
    TabScope.ORGANIZATION: "organization_id",
    TabScope.ROLE: "role_id",
    TabScope.USER: "user_id",
}

DEFAULT_ADMIN_ROLES = "admin,superadmin,super_admin"


def admin_roles() -> FrozenSet[str]:
    """Role names allowed to write organization-scope rows."""

    raw = os.getenv("CLINICTABS_ADMIN_ROLES", DEFAULT_ADMIN_ROLES)
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def parse_scope(value: Any) -> TabScope:
    if isinstance(value, TabScope):
        return value
    try:
        return TabScope(str(value).strip().lower())
    except ValueError:
        raise TabValidationError(f"Unknown tab scope: {value!r}") from None


def build_owner_key(
    scope: TabScope | str,
    organization_id: Optional[int] = None,
    role_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> str:
    """Return the ``owner_key`` stored alongside a row.

    The key folds scope and owner id into one non-null string so a plain
    unique constraint on ``(key, owner_key)`` covers every scope.
    """

    scope = parse_scope(scope)
    if scope is TabScope.SYSTEM:
        return "system"
    owner = {
        TabScope.ORGANIZATION: organization_id,
        TabScope.ROLE: role_id,
        TabScope.USER: user_id,
    }[scope]
    if owner is None:
        raise TabValidationError(f"{scope.value} scope rows require an owner id")
    return f"{scope.value}:{owner}"


@dataclass(frozen=True)
class CallerContext:
    """Identity supplied by the upstream auth/tenant layer."""

    organization_id: int
    user_id: Optional[int] = None
    role_id: Optional[int] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.role) and self.role.lower() in admin_roles()

    def owner_id(self, scope: TabScope) -> Optional[int]:
        if scope is TabScope.ORGANIZATION:
            return self.organization_id
        if scope is TabScope.ROLE:
            return self.role_id
        if scope is TabScope.USER:
            return self.user_id
        return None

    def owner_for(self, scope: TabScope) -> Dict[str, Optional[int]]:
        """Owner columns a row written by this caller at ``scope`` carries."""

        if scope is TabScope.SYSTEM:
            raise ForbiddenError("System tabs cannot be written")
        owner_id = self.owner_id(scope)
        if owner_id is None:
            raise ForbiddenError(f"No {scope.value} identity available for this caller")
        owner: Dict[str, Optional[int]] = {column: None for column in OWNER_COLUMNS.values()}
        owner[OWNER_COLUMNS[scope]] = owner_id
        return owner

    def owner_key(self, scope: TabScope) -> str:
        return build_owner_key(scope, **self.owner_for(scope))


def authorize_scope(caller: CallerContext, scope: TabScope) -> None:
    """Raise :class:`ForbiddenError` unless ``caller`` may write at ``scope``."""

    if scope is TabScope.SYSTEM:
        raise ForbiddenError("System tabs cannot be written")
    if scope is TabScope.ORGANIZATION and not caller.is_admin:
        raise ForbiddenError("Organization scope changes require an admin role")
    if scope is TabScope.ROLE and caller.role_id is None:
        raise ForbiddenError("Role scope changes require the caller to hold a role")
    if scope is TabScope.USER and caller.user_id is None:
        raise ForbiddenError("User scope changes require an identified user")


def owns(caller: CallerContext, row: Any) -> bool:
    """Return True when ``row`` sits at its scope under the caller's owner id."""

    scope = parse_scope(row.scope)
    if scope is TabScope.SYSTEM:
        return False
    owner_id = caller.owner_id(scope)
    return owner_id is not None and getattr(row, OWNER_COLUMNS[scope]) == owner_id


__all__ = [
    "TabScope",
    "SCOPE_ORDER",
    "SCOPE_PRIORITY",
    "OWNER_COLUMNS",
    "CallerContext",
    "admin_roles",
    "authorize_scope",
    "build_owner_key",
    "owns",
    "parse_scope",
]
