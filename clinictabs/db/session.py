"""Engine and session management.

The engine is built lazily from :func:`clinictabs.db.config.get_database_settings`
so importing the application never touches the filesystem or network.  Tests
and embedding applications can swap in their own session factory through
:func:`configure_session_factory`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from clinictabs.db.config import get_database_settings
from clinictabs.db.models import Base
from clinictabs.errors import InvalidStateError
from clinictabs.observability import track_write

logger = structlog.get_logger(__name__)

_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""

    global _ENGINE
    if _ENGINE is None:
        settings = get_database_settings()
        _ENGINE = sa.create_engine(settings.url, **settings.engine_options())
        logger.info("database_engine_created", dialect=_ENGINE.dialect.name)
    return _ENGINE


def _session_factory() -> sessionmaker:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )
    return _SESSION_FACTORY


def configure_session_factory(factory: Optional[sessionmaker]) -> None:
    """Force the session factory (``None`` restores the environment default)."""

    global _SESSION_FACTORY
    _SESSION_FACTORY = factory


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session."""

    session: Session = _session_factory()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""

    session: Session = _session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def write_transaction(session: Session, operation: str) -> Iterator[None]:
    """Commit the caller's writes on exit; roll back and re-raise on error.

    A unique-constraint violation at commit time means a concurrent request
    wrote the same row first and is reported as :class:`InvalidStateError`.
    """

    with track_write(operation):
        try:
            yield
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise InvalidStateError("Tab configuration changed concurrently") from exc
        except Exception:
            session.rollback()
            raise


def create_all(engine: Optional[Engine] = None) -> None:
    """Create every table known to :data:`Base.metadata`."""

    Base.metadata.create_all(engine or get_engine())


__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "write_transaction",
    "configure_session_factory",
    "create_all",
]
