#!/usr/bin/env python3
"""Create the clinictabs schema and seed the baseline system tabs and presets."""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from clinictabs.db.config import DatabaseSettings, get_database_settings, normalise_postgres_url
from clinictabs.db.session import create_all
from clinictabs.observability import configure_logging
from clinictabs.seed import seed_builtin_presets, seed_system_tabs


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the clinictabs database with system tabs and built-in presets.",
    )
    parser.add_argument(
        "--database-url",
        "-d",
        default=None,
        help="SQLAlchemy URL (default: CLINICTABS_DATABASE_URL, DATABASE_URL or the local SQLite file)",
    )
    parser.add_argument(
        "--skip-presets",
        action="store_true",
        help="Only seed system tabs; leave the preset table untouched.",
    )
    return parser.parse_args(argv)


def _resolve_settings(url: Optional[str]) -> DatabaseSettings:
    if url:
        return DatabaseSettings(url=normalise_postgres_url(url))
    return get_database_settings()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(os.getenv("LOG_LEVEL", "WARNING"))

    settings = _resolve_settings(args.database_url)
    engine = sa.create_engine(settings.url, **settings.engine_options())
    try:
        create_all(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
        with factory() as session:
            try:
                result = seed_system_tabs(session)
                presets_added = 0 if args.skip_presets else seed_builtin_presets(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
    finally:
        engine.dispose()

    print(f"Database initialised at {settings.url}")
    print(f"{result['message']} ({result['count']} system tabs).")
    if args.skip_presets:
        print("Preset seeding skipped.")
    else:
        print(f"Built-in presets added: {presets_added}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
