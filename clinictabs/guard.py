"""Minimum-visible invariant checks.

A write is simulated against the candidate rows of every caller it can reach
and run through :func:`clinictabs.resolver.merge_tabs`, the same merge the read
path uses.  Organization and role writes reach more than the acting caller, so
those are also checked against the baseline member of that audience: someone
with no rows of their own below the written scope.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set

import structlog
from sqlalchemy.orm import Session

from clinictabs.errors import InvalidStateError
from clinictabs.resolver import TabSnapshot, load_candidates, merge_tabs, visible_tabs
from clinictabs.scopes import CallerContext, TabScope

logger = structlog.get_logger(__name__)


@dataclass
class SimulatedChange:
    """Rows a write would upsert or remove.

    Upserts with an ``id`` replace the candidate carrying that id; upserts
    without one are appended as new rows.
    """

    upserts: List[TabSnapshot] = field(default_factory=list)
    removals: Set[int] = field(default_factory=set)

    def apply(self, candidates: Iterable[TabSnapshot]) -> List[TabSnapshot]:
        replacements = {tab.id: tab for tab in self.upserts if tab.id is not None}
        result: List[TabSnapshot] = []
        for tab in candidates:
            if tab.id in self.removals:
                continue
            result.append(replacements.pop(tab.id, tab))
        result.extend(replacements.values())
        result.extend(tab for tab in self.upserts if tab.id is None)
        return result

    def restricted_to(self, caller: CallerContext) -> "SimulatedChange":
        """Drop upserts that ``caller`` would never see."""

        return SimulatedChange(
            upserts=[tab for tab in self.upserts if tab.applies_to(caller)],
            removals=set(self.removals),
        )

    @property
    def hides_anything(self) -> bool:
        return bool(self.removals) or any(not tab.is_visible for tab in self.upserts)

    @property
    def scopes(self) -> Set[TabScope]:
        return {tab.scope for tab in self.upserts}


def affected_audiences(caller: CallerContext, scopes: Iterable[TabScope]) -> List[CallerContext]:
    """Callers whose view a write at ``scopes`` can change.

    The acting caller comes first.  A role write also reaches every member of
    the caller's role; an organization write reaches those and everyone else
    in the organization.
    """

    scopes = set(scopes)
    audiences = [caller]
    if scopes & {TabScope.ROLE, TabScope.ORGANIZATION} and caller.role_id is not None:
        audiences.append(CallerContext(organization_id=caller.organization_id, role_id=caller.role_id))
    if TabScope.ORGANIZATION in scopes:
        audiences.append(CallerContext(organization_id=caller.organization_id))
    return audiences


def simulate(candidates: Sequence[TabSnapshot], change: SimulatedChange) -> List[TabSnapshot]:
    """Return the merged winners as if ``change`` had been written."""

    return merge_tabs(change.apply(candidates))


def would_violate_minimum_visible(
    session: Session,
    caller: CallerContext,
    change: SimulatedChange,
    *,
    candidates: Optional[Sequence[TabSnapshot]] = None,
) -> bool:
    """Return True when ``change`` would leave ``caller`` with no visible tab."""

    if candidates is None:
        candidates = load_candidates(session, caller)
    return not visible_tabs(simulate(candidates, change.restricted_to(caller)))


def ensure_minimum_visible(
    session: Session,
    caller: CallerContext,
    change: SimulatedChange,
    *,
    candidates: Optional[Sequence[TabSnapshot]] = None,
    scopes: Optional[Iterable[TabScope]] = None,
    operation: str = "write",
) -> None:
    """Raise :class:`InvalidStateError` if ``change`` empties any affected view.

    ``candidates`` are the acting caller's own; other audiences are loaded
    from the session.  ``scopes`` defaults to the scopes of the upserts and
    must be given for pure removals.
    """

    if not change.hides_anything:
        return
    for audience in affected_audiences(caller, change.scopes if scopes is None else scopes):
        own = candidates if audience is caller else None
        if would_violate_minimum_visible(session, audience, change, candidates=own):
            logger.info(
                "tab_write_rejected_minimum_visible",
                operation=operation,
                organization_id=audience.organization_id,
                role_id=audience.role_id,
                user_id=audience.user_id,
                acting_user_id=caller.user_id,
            )
            raise InvalidStateError("At least one tab must remain visible")


__all__ = [
    "SimulatedChange",
    "affected_audiences",
    "ensure_minimum_visible",
    "simulate",
    "would_violate_minimum_visible",
]
