"""Named tab layouts that can be previewed and applied at a scope.

A preset lists tab keys in the order they should appear.  Applying it at a
scope writes override rows so the caller's view shows the listed keys in
that order and hides everything else, except mandatory tabs which always
stay visible.  Only the caller's own rows and shadows of system defaults
are written; custom rows that belong to a broader scope are left alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from clinictabs.db.models import TabConfig, TabPreset
from clinictabs.db.session import write_transaction
from clinictabs.errors import TabNotFoundError, TabValidationError
from clinictabs.guard import SimulatedChange, ensure_minimum_visible, simulate
from clinictabs.resolver import (
    TabSnapshot,
    load_candidates,
    mandatory_keys,
    merge_tabs,
    resolve_tabs,
    visible_tabs,
)
from clinictabs.schemas import PresetTabEntry
from clinictabs.scopes import CallerContext, TabScope, authorize_scope, parse_scope

logger = structlog.get_logger(__name__)

ANY_SCOPE = "any"
ORDER_STEP = 10

# Layouts installed by ``seed_builtin_presets``; keys match the seeded system tabs.
BUILTIN_PRESETS: List[Dict] = [
    {
        "name": "Clinical Essentials",
        "description": "Core clinical tabs for providers.",
        "is_default": True,
        "tabs": [
            {"key": "overview"},
            {"key": "visits"},
            {"key": "lab"},
            {"key": "medications"},
            {"key": "vitals"},
            {"key": "documents"},
            {"key": "history"},
        ],
    },
    {
        "name": "Front Desk",
        "description": "Scheduling, billing and patient communication.",
        "is_default": False,
        "tabs": [
            {"key": "overview"},
            {"key": "appointments"},
            {"key": "insurance"},
            {"key": "billing"},
            {"key": "communication"},
            {"key": "documents"},
        ],
    },
    {
        "name": "Complete Record",
        "description": "Every standard tab in the default order.",
        "is_default": False,
        "tabs": [
            {"key": key}
            for key in (
                "overview",
                "visits",
                "lab",
                "medications",
                "vitals",
                "documents",
                "billing",
                "insurance",
                "appointments",
                "history",
                "med-reviews",
                "communication",
            )
        ],
    },
]


@dataclass
class PresetPlan:
    """Outcome of applying a preset, computed without writing."""

    preset: TabPreset
    target_scope: TabScope
    candidates: List[TabSnapshot]
    change: SimulatedChange
    current: List[TabSnapshot] = field(default_factory=list)
    preview: List[TabSnapshot] = field(default_factory=list)

    def diff(self) -> Dict[str, List[str]]:
        before = {tab.key: tab for tab in self.current}
        after = {tab.key: tab for tab in self.preview}
        return {
            "added": [tab.key for tab in self.preview if tab.key not in before],
            "removed": [tab.key for tab in self.current if tab.key not in after],
            "modified": [
                tab.key
                for tab in self.preview
                if tab.key in before and before[tab.key].display_order != tab.display_order
            ],
        }


def preset_entries(preset: TabPreset) -> List[PresetTabEntry]:
    return [PresetTabEntry.model_validate(entry) for entry in preset.tabs or []]


def list_presets(session: Session, caller: CallerContext) -> List[TabPreset]:
    """Global presets plus those owned by the caller's organization."""

    stmt = (
        select(TabPreset)
        .where(
            or_(
                TabPreset.organization_id.is_(None),
                TabPreset.organization_id == caller.organization_id,
            )
        )
        .order_by(TabPreset.is_default.desc(), TabPreset.name.asc(), TabPreset.id.asc())
    )
    return list(session.execute(stmt).scalars().all())


def get_preset(session: Session, preset_id: int, caller: CallerContext) -> TabPreset:
    preset = session.get(TabPreset, preset_id)
    if preset is None or preset.organization_id not in (None, caller.organization_id):
        raise TabNotFoundError(f"Preset {preset_id} not found")
    return preset


def _desired_layout(
    entries: List[PresetTabEntry],
) -> Dict[str, Tuple[bool, int]]:
    layout: Dict[str, Tuple[bool, int]] = {}
    for index, entry in enumerate(entries):
        order = entry.display_order if entry.display_order is not None else (index + 1) * ORDER_STEP
        layout.setdefault(entry.key, (entry.is_visible, order))
    return layout


def plan_preset(
    session: Session,
    preset: TabPreset,
    target_scope: TabScope | str,
    caller: CallerContext,
) -> PresetPlan:
    """Work out the override rows that make the caller's view match ``preset``."""

    target_scope = parse_scope(target_scope)
    authorize_scope(caller, target_scope)
    if preset.scope != ANY_SCOPE and preset.scope != target_scope.value:
        raise TabValidationError(
            f"Preset '{preset.name}' only applies at {preset.scope} scope"
        )

    owner_key = caller.owner_key(target_scope)
    owner_columns = caller.owner_for(target_scope)
    candidates = load_candidates(session, caller)
    layout = _desired_layout(preset_entries(preset))
    mandatory = mandatory_keys(candidates)

    grouped: Dict[str, List[TabSnapshot]] = {}
    for tab in candidates:
        grouped.setdefault(tab.key, []).append(tab)

    upserts: List[TabSnapshot] = []
    for key, rows in grouped.items():
        own: Optional[TabSnapshot] = next(
            (tab for tab in rows if not tab.is_system_default and tab.owner_key == owner_key),
            None,
        )
        below = merge_tabs(tab for tab in rows if tab.priority < target_scope.priority)
        base = own or (below[0] if below else None)
        if base is None:
            continue

        is_visible, display_order = layout.get(key, (False, base.display_order))
        if key in mandatory:
            is_visible = True

        if own is not None:
            if own.is_visible != is_visible or own.display_order != display_order:
                upserts.append(own.with_changes(is_visible=is_visible, display_order=display_order))
        elif base.is_system_default and (
            base.is_visible != is_visible or base.display_order != display_order
        ):
            upserts.append(
                TabSnapshot(
                    id=None,
                    scope=target_scope,
                    **{**base.presentation(), "display_order": display_order},
                    **owner_columns,
                    is_system_default=False,
                    is_mandatory=False,
                    is_visible=is_visible,
                    created_by=caller.user_id,
                )
            )

    change = SimulatedChange(upserts=upserts)
    return PresetPlan(
        preset=preset,
        target_scope=target_scope,
        candidates=candidates,
        change=change,
        current=visible_tabs(merge_tabs(candidates)),
        preview=visible_tabs(simulate(candidates, change)),
    )


def preview_preset(
    session: Session,
    preset_id: int,
    target_scope: TabScope | str,
    caller: CallerContext,
) -> PresetPlan:
    """Return the plan for applying a preset; nothing is written."""

    return plan_preset(session, get_preset(session, preset_id, caller), target_scope, caller)


def apply_preset(
    session: Session,
    preset_id: int,
    target_scope: TabScope | str,
    caller: CallerContext,
) -> Tuple[PresetPlan, List[TabSnapshot]]:
    """Write the preset's overrides and return the plan with the new view."""

    with write_transaction(session, "preset_apply"):
        plan = preview_preset(session, preset_id, target_scope, caller)
        ensure_minimum_visible(
            session,
            caller,
            plan.change,
            candidates=plan.candidates,
            scopes={plan.target_scope},
            operation="preset_apply",
        )
        for snapshot in plan.change.upserts:
            if snapshot.id is not None:
                row = session.get(TabConfig, snapshot.id)
                row.is_visible = snapshot.is_visible
                row.display_order = snapshot.display_order
                continue
            session.add(
                TabConfig(
                    **snapshot.presentation(),
                    scope=snapshot.scope.value,
                    organization_id=snapshot.organization_id,
                    role_id=snapshot.role_id,
                    user_id=snapshot.user_id,
                    is_system_default=False,
                    is_mandatory=False,
                    is_visible=snapshot.is_visible,
                    created_by=snapshot.created_by,
                )
            )
        logger.info(
            "tab_preset_applied",
            preset=plan.preset.name,
            scope=plan.target_scope.value,
            written=len(plan.change.upserts),
        )

    return plan, resolve_tabs(session, caller)


__all__ = [
    "BUILTIN_PRESETS",
    "PresetPlan",
    "apply_preset",
    "get_preset",
    "list_presets",
    "plan_preset",
    "preset_entries",
    "preview_preset",
]
