"""Alembic environment for clinictabs."""

from __future__ import annotations

from alembic import context
import sqlalchemy as sa
from sqlalchemy import pool

from clinictabs.db.config import DatabaseSettings, get_database_settings, normalise_postgres_url
from clinictabs.db.models import Base

config = context.config
configured_url = config.get_main_option("sqlalchemy.url")
if configured_url:
    settings = DatabaseSettings(url=normalise_postgres_url(configured_url))
else:
    settings = get_database_settings()
    config.set_main_option("sqlalchemy.url", settings.url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""

    context.configure(
        url=settings.url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=settings.is_sqlite,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""

    engine_options = settings.engine_options()
    connect_args = engine_options.pop("connect_args", {})
    engine_options.pop("pool_size", None)
    engine = sa.create_engine(
        settings.url,
        connect_args=connect_args,
        poolclass=pool.NullPool,
        **engine_options,
    )

    with engine.begin() as connection:
        if settings.is_postgres:
            connection.execute(sa.text("SET TIME ZONE 'UTC'"))
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=settings.is_sqlite,
            transaction_per_migration=True,
        )
        context.run_migrations()
    engine.dispose()


def run_migrations() -> None:
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        run_migrations_online()


run_migrations()
