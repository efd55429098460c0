"""SQLAlchemy models for tab configuration rows and presets."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Integer, String, Text, event
from sqlalchemy.orm import declarative_base

from clinictabs.scopes import build_owner_key
from clinictabs.time_utils import utc_now


Base = declarative_base()


_SCOPE_OWNER_RULE = (
    "(scope = 'system' AND organization_id IS NULL AND role_id IS NULL AND user_id IS NULL)"
    " OR (scope = 'organization' AND organization_id IS NOT NULL AND role_id IS NULL AND user_id IS NULL)"
    " OR (scope = 'role' AND role_id IS NOT NULL AND organization_id IS NULL AND user_id IS NULL)"
    " OR (scope = 'user' AND user_id IS NOT NULL AND organization_id IS NULL AND role_id IS NULL)"
)


class TabConfig(Base):
    """One candidate tab definition at a single scope."""

    __tablename__ = "tab_configs"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    key = sa.Column(String(64), nullable=False, index=True)
    label = sa.Column(String(100), nullable=False)
    icon = sa.Column(String(64), nullable=True)
    content_type = sa.Column(String(32), nullable=False, server_default=sa.text("'builtin_component'"))
    settings = sa.Column(sa.JSON, nullable=False, default=dict)
    category = sa.Column(String(64), nullable=True)
    scope = sa.Column(String(16), nullable=False)
    organization_id = sa.Column(Integer, nullable=True, index=True)
    role_id = sa.Column(Integer, nullable=True, index=True)
    user_id = sa.Column(Integer, nullable=True, index=True)
    owner_key = sa.Column(String(64), nullable=False)
    is_system_default = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    is_mandatory = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    is_visible = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    display_order = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    created_by = sa.Column(Integer, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=utc_now,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        sa.UniqueConstraint("key", "owner_key", name="uq_tab_configs_key_owner"),
        sa.CheckConstraint(_SCOPE_OWNER_RULE, name="ck_tab_configs_scope_owner"),
        sa.Index("idx_tab_configs_scope", "scope", "is_system_default"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"<TabConfig id={self.id} key={self.key!r} owner={self.owner_key!r}>"


@event.listens_for(TabConfig, "before_insert")
@event.listens_for(TabConfig, "before_update")
def _sync_owner_key(mapper, connection, target: TabConfig) -> None:  # type: ignore[override]
    target.owner_key = build_owner_key(
        target.scope,
        organization_id=target.organization_id,
        role_id=target.role_id,
        user_id=target.user_id,
    )


class TabPreset(Base):
    """Named tab layout that can be applied at a writable scope."""

    __tablename__ = "tab_presets"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String(100), nullable=False)
    description = sa.Column(Text, nullable=True)
    scope = sa.Column(String(16), nullable=False, server_default=sa.text("'any'"), default="any")
    organization_id = sa.Column(Integer, nullable=True, index=True)
    is_default = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    tabs = sa.Column(sa.JSON, nullable=False, default=list)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=utc_now,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        sa.UniqueConstraint("name", "organization_id", name="uq_tab_presets_name_org"),
    )


__all__ = ["Base", "TabConfig", "TabPreset"]
