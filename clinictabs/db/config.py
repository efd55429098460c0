"""Where the tab store lives and how to connect to it.

``CLINICTABS_DATABASE_URL`` (or the platform-provided ``DATABASE_URL``) selects
a server database.  Without one the store is a SQLite file, either at
``CLINICTABS_DB_PATH`` or in the per-user data directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir

APP_NAME = "clinictabs"
SQLITE_FILENAME = "tabs.db"


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: Optional[int] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgres")

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        if self.is_sqlite:
            # Sessions are handed across FastAPI's threadpool.
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            options["pool_pre_ping"] = True
            # Timestamps are compared in UTC by the resolver and the API.
            options["connect_args"] = {"options": "-c timezone=UTC"}
            if self.pool_size is not None:
                options["pool_size"] = self.pool_size
        return options


def normalise_postgres_url(url: str) -> str:
    """Route bare PostgreSQL URLs through the psycopg 3 driver."""

    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def _sqlite_file() -> Path:
    override = os.getenv("CLINICTABS_DB_PATH")
    path = Path(override).expanduser() if override else Path(user_data_dir(APP_NAME, APP_NAME))
    if not override or path.is_dir():
        path = path / SQLITE_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _pool_size() -> Optional[int]:
    raw = os.getenv("CLINICTABS_DB_POOL_SIZE", "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"CLINICTABS_DB_POOL_SIZE must be an integer; got {raw!r}") from None


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the active database settings derived from the environment."""

    echo = os.getenv("CLINICTABS_DB_ECHO", "0").lower() in {"1", "true", "yes"}
    url = os.getenv("CLINICTABS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=normalise_postgres_url(url), echo=echo, pool_size=_pool_size())
    return DatabaseSettings(url=f"sqlite:///{_sqlite_file()}", echo=echo)
