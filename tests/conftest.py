import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('JWT_SECRET', 'clinictabs-test-secret')

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clinictabs.db import Base, TabConfig, configure_session_factory
from clinictabs.scopes import CallerContext
from clinictabs.seed import seed_all

ORG_ID = 1
OTHER_ORG_ID = 2
CLINICIAN_ROLE_ID = 10


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        """Return a new SQLAlchemy session bound to the in-memory engine."""

        return self.session_factory()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database for each test."""

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    configure_session_factory(session_factory)
    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        configure_session_factory(None)
        engine.dispose()


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    """Yield a SQLAlchemy session tied to the in-memory database."""

    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def seeded(db_session: Session) -> Dict[str, int]:
    """Seed system tabs and presets; return system tab ids keyed by tab key."""

    seed_all(db_session)
    rows = db_session.execute(
        sa.select(TabConfig).where(TabConfig.is_system_default.is_(True))
    ).scalars()
    return {row.key: row.id for row in rows}


@pytest.fixture(scope='function')
def api_client(in_memory_db: DatabaseContext) -> Iterator[TestClient]:
    """Yield a FastAPI test client bound to the in-memory database."""

    from clinictabs import main

    with TestClient(main.app) as client:
        yield client


def auth_header(token: str) -> Dict[str, str]:
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def headers() -> Callable[..., Dict[str, str]]:
    """Factory returning Authorization headers for a caller identity."""

    from clinictabs import main

    def _headers(
        user_id: Optional[int] = 100,
        organization_id: int = ORG_ID,
        role: Optional[str] = 'clinician',
        role_id: Optional[int] = CLINICIAN_ROLE_ID,
    ) -> Dict[str, str]:
        token = main.create_access_token(user_id, organization_id, role=role, role_id=role_id)
        return auth_header(token)

    return _headers


@pytest.fixture
def clinician() -> CallerContext:
    return CallerContext(organization_id=ORG_ID, user_id=100, role_id=CLINICIAN_ROLE_ID, role='clinician')


@pytest.fixture
def colleague() -> CallerContext:
    return CallerContext(organization_id=ORG_ID, user_id=101, role_id=CLINICIAN_ROLE_ID, role='clinician')


@pytest.fixture
def org_admin() -> CallerContext:
    return CallerContext(organization_id=ORG_ID, user_id=1, role_id=1, role='admin')


def fresh_rows(session: Session, **filters) -> list:
    """Return ``TabConfig`` rows re-read from the database."""

    session.expire_all()
    stmt = sa.select(TabConfig).filter_by(**filters).order_by(TabConfig.id.asc())
    return list(session.execute(stmt).scalars())
