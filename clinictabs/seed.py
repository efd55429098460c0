"""Baseline system tabs and built-in presets."""

from __future__ import annotations

from typing import Dict, List, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinictabs.db.models import TabConfig, TabPreset
from clinictabs.presets import ANY_SCOPE, BUILTIN_PRESETS
from clinictabs.scopes import TabScope

logger = structlog.get_logger(__name__)

# (key, label, icon, component, display order)
SYSTEM_TABS: List[Tuple[str, str, str, str, int]] = [
    ("overview", "Overview", "LayoutGrid", "PatientOverviewTab", 10),
    ("visits", "Visits", "Calendar", "VisitsTab", 20),
    ("lab", "Lab Results", "TestTube", "LabResultsTab", 30),
    ("medications", "Medications", "Pill", "MedicationsTab", 40),
    ("vitals", "Vitals", "Activity", "VitalsTab", 50),
    ("documents", "Documents", "FileText", "DocumentsTab", 60),
    ("billing", "Billing", "CreditCard", "BillingTab", 70),
    ("insurance", "Insurance", "Shield", "InsuranceTab", 80),
    ("appointments", "Appointments", "CalendarDays", "AppointmentsTab", 90),
    ("history", "History", "History", "HistoryTab", 100),
    ("med-reviews", "Reviews", "FileCheck", "ReviewsTab", 110),
    ("communication", "Chat", "MessageSquare", "CommunicationTab", 120),
]


def _system_tab_count(session: Session) -> int:
    stmt = select(func.count(TabConfig.id)).where(
        TabConfig.scope == TabScope.SYSTEM.value,
        TabConfig.is_system_default.is_(True),
    )
    return int(session.execute(stmt).scalar_one())


def seed_system_tabs(session: Session) -> Dict[str, object]:
    """Insert the baseline system tabs unless any already exist.

    The caller is responsible for committing.
    """

    existing = _system_tab_count(session)
    if existing:
        return {"message": "System tabs already seeded", "count": existing}

    for key, label, icon, component, order in SYSTEM_TABS:
        session.add(
            TabConfig(
                key=key,
                label=label,
                icon=icon,
                content_type="builtin_component",
                settings={"componentName": component},
                scope=TabScope.SYSTEM.value,
                is_system_default=True,
                is_mandatory=False,
                is_visible=True,
                display_order=order,
            )
        )
    session.flush()
    logger.info("system_tabs_seeded", count=len(SYSTEM_TABS))
    return {"message": "System tabs seeded", "count": len(SYSTEM_TABS)}


def seed_builtin_presets(session: Session) -> int:
    """Insert missing global presets and return how many were added."""

    names = set(
        session.execute(select(TabPreset.name).where(TabPreset.organization_id.is_(None))).scalars()
    )
    added = 0
    for preset in BUILTIN_PRESETS:
        if preset["name"] in names:
            continue
        session.add(
            TabPreset(
                name=preset["name"],
                description=preset["description"],
                scope=ANY_SCOPE,
                organization_id=None,
                is_default=preset["is_default"],
                tabs=[dict(entry) for entry in preset["tabs"]],
            )
        )
        added += 1
    if added:
        session.flush()
        logger.info("tab_presets_seeded", count=added)
    return added


def seed_all(session: Session) -> Dict[str, object]:
    """Seed tabs and presets in one transaction."""

    try:
        result = seed_system_tabs(session)
        result["presets"] = seed_builtin_presets(session)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return result


__all__ = ["SYSTEM_TABS", "seed_all", "seed_builtin_presets", "seed_system_tabs"]
