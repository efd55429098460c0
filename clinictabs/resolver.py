"""Scope resolution for tab configurations.

Every caller sees the union of system defaults, their organization's rows,
their role's rows and their own rows.  :func:`merge_tabs` folds that union
into one winner per tab key, preferring the most specific scope.  It is a
pure function over :class:`TabSnapshot` values and is the only merge used by
both the read path and the write guard.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import sqlalchemy as sa
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from clinictabs.db.models import TabConfig
from clinictabs.scopes import OWNER_COLUMNS, CallerContext, TabScope, build_owner_key, parse_scope


@dataclass(frozen=True)
class TabSnapshot:
    """Immutable view of a tab row used for merging and simulation.

    ``id`` is ``None`` for rows that only exist in a simulated change.
    """

    id: Optional[int]
    key: str
    label: str
    scope: TabScope
    icon: Optional[str] = None
    content_type: str = "builtin_component"
    settings: Mapping[str, Any] = field(default_factory=dict)
    category: Optional[str] = None
    organization_id: Optional[int] = None
    role_id: Optional[int] = None
    user_id: Optional[int] = None
    is_system_default: bool = False
    is_mandatory: bool = False
    is_visible: bool = True
    display_order: int = 0
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: TabConfig) -> "TabSnapshot":
        return cls(
            id=row.id,
            key=row.key,
            label=row.label,
            scope=parse_scope(row.scope),
            icon=row.icon,
            content_type=row.content_type or "builtin_component",
            settings=dict(row.settings or {}),
            category=row.category,
            organization_id=row.organization_id,
            role_id=row.role_id,
            user_id=row.user_id,
            is_system_default=bool(row.is_system_default),
            is_mandatory=bool(row.is_mandatory),
            is_visible=bool(row.is_visible),
            display_order=int(row.display_order or 0),
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @property
    def priority(self) -> int:
        return self.scope.priority

    @property
    def owner_key(self) -> str:
        return build_owner_key(self.scope, self.organization_id, self.role_id, self.user_id)

    def applies_to(self, caller: CallerContext) -> bool:
        """Mirror of :func:`candidate_filter` for a single snapshot."""

        if self.scope is TabScope.SYSTEM:
            return self.is_system_default
        owner_id = caller.owner_id(self.scope)
        return owner_id is not None and getattr(self, OWNER_COLUMNS[self.scope]) == owner_id

    def with_changes(self, **changes: Any) -> "TabSnapshot":
        return dataclasses.replace(self, **changes)

    def presentation(self) -> Dict[str, Any]:
        """Fields copied onto a shadow row."""

        return {
            "key": self.key,
            "label": self.label,
            "icon": self.icon,
            "content_type": self.content_type,
            "settings": dict(self.settings),
            "category": self.category,
            "display_order": self.display_order,
        }


def _precedence(tab: TabSnapshot) -> tuple:
    # Higher scope wins; on a tie the lower display order, then the older row.
    row_id = tab.id if tab.id is not None else float("inf")
    return (-tab.priority, tab.display_order, row_id)


def merge_tabs(candidates: Iterable[TabSnapshot]) -> List[TabSnapshot]:
    """Return one winner per key, ordered by ``display_order`` then key.

    Hidden winners are kept; they still shadow lower scopes.
    """

    winners: Dict[str, TabSnapshot] = {}
    for tab in candidates:
        current = winners.get(tab.key)
        if current is None or _precedence(tab) < _precedence(current):
            winners[tab.key] = tab
    return sorted(winners.values(), key=lambda tab: (tab.display_order, tab.key))


def visible_tabs(winners: Iterable[TabSnapshot]) -> List[TabSnapshot]:
    return [tab for tab in winners if tab.is_visible]


def mandatory_keys(candidates: Iterable[TabSnapshot]) -> Set[str]:
    """Keys flagged mandatory by any candidate row."""

    return {tab.key for tab in candidates if tab.is_mandatory}


def candidate_filter(caller: CallerContext) -> sa.ColumnElement[bool]:
    """SQL predicate selecting every row that applies to ``caller``."""

    clauses = [
        and_(TabConfig.scope == TabScope.SYSTEM.value, TabConfig.is_system_default.is_(True)),
        and_(
            TabConfig.scope == TabScope.ORGANIZATION.value,
            TabConfig.organization_id == caller.organization_id,
        ),
    ]
    if caller.role_id is not None:
        clauses.append(and_(TabConfig.scope == TabScope.ROLE.value, TabConfig.role_id == caller.role_id))
    if caller.user_id is not None:
        clauses.append(and_(TabConfig.scope == TabScope.USER.value, TabConfig.user_id == caller.user_id))
    return or_(*clauses)


def load_candidates(session: Session, caller: CallerContext) -> List[TabSnapshot]:
    stmt = select(TabConfig).where(candidate_filter(caller)).order_by(TabConfig.id.asc())
    rows = session.execute(stmt).scalars().all()
    return [TabSnapshot.from_row(row) for row in rows]


def resolve_tabs(
    session: Session,
    caller: CallerContext,
    *,
    include_hidden: bool = False,
) -> List[TabSnapshot]:
    """Return the caller's merged tab list."""

    winners = merge_tabs(load_candidates(session, caller))
    if include_hidden:
        return winners
    return visible_tabs(winners)


__all__ = [
    "TabSnapshot",
    "candidate_filter",
    "load_candidates",
    "mandatory_keys",
    "merge_tabs",
    "resolve_tabs",
    "visible_tabs",
]
