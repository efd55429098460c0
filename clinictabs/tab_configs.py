"""Write operations on tab configuration rows.

System default rows are never modified.  Changing the visibility of one
creates (or updates) an override row at the requested scope that shadows the
default for the callers covered by that scope.  Rows that are not system
defaults are edited in place, but only by the caller that owns them.

Each public function is one transaction: it commits on success and rolls the
session back on any error before re-raising.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinictabs.db.models import TabConfig
from clinictabs.db.session import write_transaction
from clinictabs.errors import (
    ForbiddenError,
    TabNotFoundError,
    TabValidationError,
)
from clinictabs.guard import SimulatedChange, ensure_minimum_visible
from clinictabs.resolver import (
    TabSnapshot,
    load_candidates,
    mandatory_keys,
    resolve_tabs,
)
from clinictabs.schemas import (
    TabConfigCreate,
    TabConfigUpdate,
    TabOrderItem,
    check_content_settings,
)
from clinictabs.scopes import (
    CallerContext,
    TabScope,
    authorize_scope,
    owns,
    parse_scope,
)

logger = structlog.get_logger(__name__)


def _load_tab(session: Session, tab_id: int) -> TabConfig:
    row = session.get(TabConfig, tab_id)
    if row is None:
        raise TabNotFoundError(f"Tab {tab_id} not found")
    return row


def _find_override(session: Session, key: str, owner_key: str) -> Optional[TabConfig]:
    stmt = select(TabConfig).where(
        TabConfig.key == key,
        TabConfig.owner_key == owner_key,
        TabConfig.is_system_default.is_(False),
    )
    return session.execute(stmt).scalars().first()


def _ensure_owned(caller: CallerContext, row: TabConfig, action: str) -> None:
    if row.is_system_default:
        raise ForbiddenError(f"System default tabs cannot be {action}")
    authorize_scope(caller, parse_scope(row.scope))
    if not owns(caller, row):
        raise ForbiddenError(f"Tab {row.id} is not owned by the caller")


def _is_mandatory(row: TabConfig, candidates: Sequence[TabSnapshot]) -> bool:
    return bool(row.is_mandatory) or row.key in mandatory_keys(candidates)


def _shadow_record(
    target: TabConfig,
    scope: TabScope,
    caller: CallerContext,
    is_visible: bool,
) -> TabConfig:
    presentation = TabSnapshot.from_row(target).presentation()
    return TabConfig(
        **presentation,
        scope=scope.value,
        **caller.owner_for(scope),
        is_system_default=False,
        is_mandatory=False,
        is_visible=is_visible,
        created_by=caller.user_id,
    )


def _insert_shadow(session: Session, record: TabConfig, caller: CallerContext) -> TabConfig:
    """Insert ``record``; if a concurrent request won, update its row instead."""

    key, owner_key, is_visible = record.key, caller.owner_key(parse_scope(record.scope)), record.is_visible
    session.add(record)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        winner = _find_override(session, key, owner_key)
        if winner is None:
            raise
        ensure_minimum_visible(
            session,
            caller,
            SimulatedChange(upserts=[TabSnapshot.from_row(winner).with_changes(is_visible=is_visible)]),
            operation="set_visibility",
        )
        winner.is_visible = is_visible
        logger.info("tab_visibility_override_race_resolved", key=key, owner=owner_key, tab_id=winner.id)
        return winner
    logger.info("tab_visibility_override_created", key=key, owner=owner_key, tab_id=record.id)
    return record


def list_tabs(
    session: Session,
    caller: CallerContext,
    *,
    include_hidden: bool = False,
) -> List[TabSnapshot]:
    """Return the merged tab list for ``caller``."""

    return resolve_tabs(session, caller, include_hidden=include_hidden)


def set_visibility(
    session: Session,
    tab_id: int,
    is_visible: bool,
    target_scope: TabScope | str,
    caller: CallerContext,
) -> TabConfig:
    """Show or hide a tab for the audience covered by ``target_scope``.

    For a system default the change lands on the caller's override row at
    ``target_scope``, which is created on first use.  For any other row the
    caller must own it at ``target_scope`` and it is updated directly.
    """

    target_scope = parse_scope(target_scope)
    with write_transaction(session, "set_visibility"):
        authorize_scope(caller, target_scope)
        target = _load_tab(session, tab_id)
        candidates = load_candidates(session, caller)

        if not is_visible and _is_mandatory(target, candidates):
            raise ForbiddenError(f"Tab '{target.key}' is mandatory and cannot be hidden")

        if target.is_system_default:
            existing = _find_override(session, target.key, caller.owner_key(target_scope))
            if existing is not None:
                planned = TabSnapshot.from_row(existing).with_changes(is_visible=is_visible)
            else:
                shadow = _shadow_record(target, target_scope, caller, is_visible)
                planned = TabSnapshot.from_row(shadow)
            ensure_minimum_visible(
                session,
                caller,
                SimulatedChange(upserts=[planned]),
                candidates=candidates,
                operation="set_visibility",
            )
            if existing is not None:
                existing.is_visible = is_visible
                record = existing
                logger.info(
                    "tab_visibility_override_updated",
                    key=record.key,
                    owner=record.owner_key,
                    tab_id=record.id,
                    is_visible=is_visible,
                )
            else:
                record = _insert_shadow(session, shadow, caller)
        else:
            if parse_scope(target.scope) is not target_scope:
                raise ForbiddenError(
                    f"Tab {target.id} belongs to {target.scope} scope, not {target_scope.value}"
                )
            _ensure_owned(caller, target, "modified")
            planned = TabSnapshot.from_row(target).with_changes(is_visible=is_visible)
            ensure_minimum_visible(
                session,
                caller,
                SimulatedChange(upserts=[planned]),
                candidates=candidates,
                operation="set_visibility",
            )
            target.is_visible = is_visible
            record = target
            logger.info("tab_visibility_updated", key=record.key, tab_id=record.id, is_visible=is_visible)

    return record


def create_tab(session: Session, payload: TabConfigCreate, caller: CallerContext) -> TabConfig:
    """Insert a custom tab owned by ``caller`` at ``payload.scope``."""

    scope = payload.scope
    with write_transaction(session, "create"):
        authorize_scope(caller, scope)
        if payload.is_mandatory and scope is not TabScope.ORGANIZATION:
            raise TabValidationError("Only organization scope tabs can be marked mandatory")

        candidates = load_candidates(session, caller)
        if not payload.is_visible and payload.key in mandatory_keys(candidates):
            raise ForbiddenError(f"Tab '{payload.key}' is mandatory and cannot be hidden")
        if _find_override(session, payload.key, caller.owner_key(scope)) is not None:
            raise TabValidationError(
                f"A tab with key '{payload.key}' already exists at {scope.value} scope"
            )

        record = TabConfig(
            key=payload.key,
            label=payload.label,
            icon=payload.icon,
            content_type=payload.content_type,
            settings=dict(payload.settings),
            category=payload.category,
            scope=scope.value,
            **caller.owner_for(scope),
            is_system_default=False,
            is_mandatory=payload.is_mandatory,
            is_visible=payload.is_visible,
            display_order=payload.display_order,
            created_by=caller.user_id,
        )
        ensure_minimum_visible(
            session,
            caller,
            SimulatedChange(upserts=[TabSnapshot.from_row(record)]),
            candidates=candidates,
            operation="create",
        )
        session.add(record)
        session.flush()
        logger.info("tab_created", key=record.key, scope=scope.value, tab_id=record.id)

    return record


def update_tab(
    session: Session,
    tab_id: int,
    payload: TabConfigUpdate,
    caller: CallerContext,
) -> TabConfig:
    """Apply a partial update to a custom or override row owned by ``caller``."""

    with write_transaction(session, "update"):
        row = _load_tab(session, tab_id)
        _ensure_owned(caller, row, "modified")

        changes = payload.model_dump(exclude_unset=True)
        for field_name in ("label", "is_visible", "settings"):
            if field_name in changes and changes[field_name] is None:
                raise TabValidationError(f"{field_name} cannot be null")
        if "settings" in changes:
            try:
                check_content_settings(row.content_type, changes["settings"])
            except ValueError as exc:
                raise TabValidationError(str(exc)) from None

        if changes.get("is_visible") is False:
            candidates = load_candidates(session, caller)
            if _is_mandatory(row, candidates):
                raise ForbiddenError(f"Tab '{row.key}' is mandatory and cannot be hidden")
            ensure_minimum_visible(
                session,
                caller,
                SimulatedChange(upserts=[TabSnapshot.from_row(row).with_changes(is_visible=False)]),
                candidates=candidates,
                operation="update",
            )

        for field_name, value in changes.items():
            setattr(row, field_name, value)
        logger.info("tab_updated", tab_id=row.id, fields=sorted(changes))

    return row


def reorder_tabs(session: Session, items: Sequence[TabOrderItem], caller: CallerContext) -> int:
    """Set ``display_order`` for every listed tab, or for none of them."""

    if not items:
        return 0

    with write_transaction(session, "reorder"):
        ids = [item.id for item in items]
        if len(set(ids)) != len(ids):
            raise TabValidationError("Reorder batch lists a tab more than once")

        rows = session.execute(select(TabConfig).where(TabConfig.id.in_(ids))).scalars().all()
        by_id = {row.id: row for row in rows}
        try:
            for tab_id in ids:
                row = by_id.get(tab_id)
                if row is None:
                    raise TabNotFoundError(f"Tab {tab_id} not found")
                _ensure_owned(caller, row, "reordered")
        except (TabNotFoundError, ForbiddenError) as exc:
            logger.info("tab_reorder_rejected", tab_id=tab_id, reason=exc.error_type)
            raise

        for item in items:
            by_id[item.id].display_order = item.display_order
        logger.info("tab_reordered", count=len(items))

    return len(items)


def delete_tab(session: Session, tab_id: int, caller: CallerContext) -> TabSnapshot:
    """Delete a custom or override row owned by ``caller``.

    Resolution then falls back to the next candidate for the row's key.
    """

    with write_transaction(session, "delete"):
        row = _load_tab(session, tab_id)
        _ensure_owned(caller, row, "deleted")
        snapshot = TabSnapshot.from_row(row)
        ensure_minimum_visible(
            session,
            caller,
            SimulatedChange(removals={row.id}),
            scopes={snapshot.scope},
            operation="delete",
        )
        session.delete(row)
        logger.info("tab_deleted", tab_id=tab_id, key=snapshot.key, scope=snapshot.scope.value)

    return snapshot


def reset_tabs(session: Session, scope: TabScope | str, caller: CallerContext) -> int:
    """Delete every row the caller owns at ``scope`` and return how many went."""

    scope = parse_scope(scope)
    with write_transaction(session, "reset"):
        authorize_scope(caller, scope)
        owner_key = caller.owner_key(scope)
        rows = (
            session.execute(
                select(TabConfig).where(
                    TabConfig.owner_key == owner_key,
                    TabConfig.is_system_default.is_(False),
                )
            )
            .scalars()
            .all()
        )
        if rows:
            ensure_minimum_visible(
                session,
                caller,
                SimulatedChange(removals={row.id for row in rows}),
                scopes={scope},
                operation="reset",
            )
        for row in rows:
            session.delete(row)
        logger.info("tab_scope_reset", scope=scope.value, owner=owner_key, deleted=len(rows))

    return len(rows)


__all__ = [
    "create_tab",
    "delete_tab",
    "list_tabs",
    "reorder_tabs",
    "reset_tabs",
    "set_visibility",
    "update_tab",
]
