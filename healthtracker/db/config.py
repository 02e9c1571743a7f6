"""Where the visit database lives and how SQLAlchemy connects to it.

``HEALTHTRACKER_DATABASE_URL`` (or ``DATABASE_URL``) selects any SQLAlchemy
URL.  Without one the service uses a SQLite file, either at
``HEALTHTRACKER_DB_PATH`` or in the per-user data directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir
from sqlalchemy.engine import make_url

from healthtracker.config import APP_NAME, env_flag, env_int

SQLITE_FILENAME = "healthtracker.db"
DEFAULT_SQLITE_BUSY_TIMEOUT = 15


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    busy_timeout: int = DEFAULT_SQLITE_BUSY_TIMEOUT
    pool_size: Optional[int] = None
    max_overflow: Optional[int] = None
    connect_timeout: Optional[int] = None

    @property
    def dialect(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def is_sqlite(self) -> bool:
        return self.dialect == "sqlite"

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        if self.pool_size is not None:
            options["pool_size"] = self.pool_size
        if self.max_overflow is not None:
            options["max_overflow"] = self.max_overflow

        if self.is_sqlite:
            # Store calls run on worker threads and concurrent writers queue
            # on the database lock for up to busy_timeout seconds.
            options["connect_args"] = {"check_same_thread": False, "timeout": self.busy_timeout}
        elif self.dialect in ("postgresql", "postgres"):
            options["pool_pre_ping"] = True
            connect_args: Dict[str, object] = {"options": "-c timezone=UTC"}
            if self.connect_timeout is not None:
                connect_args["connect_timeout"] = self.connect_timeout
            options["connect_args"] = connect_args
        return options


def sqlite_path(override: Optional[str] = None) -> Path:
    """Return the SQLite file for *override* (a file or directory) or the default location."""

    if override:
        path = Path(override).expanduser()
        if path.is_dir():
            path = path / SQLITE_FILENAME
    else:
        path = Path(user_data_dir(APP_NAME, APP_NAME)) / SQLITE_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    url = os.getenv("HEALTHTRACKER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        url = f"sqlite:///{sqlite_path(os.getenv('HEALTHTRACKER_DB_PATH'))}"
    elif url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return DatabaseSettings(
        url=url,
        echo=env_flag("DB_ECHO"),
        busy_timeout=env_int("SQLITE_BUSY_TIMEOUT", DEFAULT_SQLITE_BUSY_TIMEOUT),
        pool_size=env_int("DB_POOL_SIZE", None),
        max_overflow=env_int("DB_MAX_OVERFLOW", None),
        connect_timeout=env_int("PGCONNECT_TIMEOUT", None),
    )


__all__ = ["DatabaseSettings", "get_database_settings", "sqlite_path"]
