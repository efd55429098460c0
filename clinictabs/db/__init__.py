"""Database helpers for clinictabs."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base, TabConfig, TabPreset
from .session import (
    configure_session_factory,
    create_all,
    get_engine,
    get_session,
    session_scope,
    write_transaction,
)

__all__ = [
    "Base",
    "TabConfig",
    "TabPreset",
    "DatabaseSettings",
    "get_database_settings",
    "configure_session_factory",
    "create_all",
    "get_engine",
    "get_session",
    "session_scope",
    "write_transaction",
]
