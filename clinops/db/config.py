"""Database configuration resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict

from platformdirs import user_data_dir

from clinops.config import APP_NAME

DB_FILENAME = "clinops.db"


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        if self.is_sqlite:
            # Worker stages reach the engine from asyncio.to_thread.
            options["connect_args"] = {"check_same_thread": False}
        else:
            options["pool_pre_ping"] = True
            options["connect_args"] = {"options": "-c timezone=UTC"}
        return options


def _sqlite_path(override: str | None) -> Path:
    if override:
        path = Path(override).expanduser()
        if path.is_dir():
            path = path / DB_FILENAME
    else:
        path = Path(user_data_dir(APP_NAME, APP_NAME)) / DB_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _normalise_postgres_url(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the database settings derived from the environment.

    ``CLINOPS_DATABASE_URL`` (or ``DATABASE_URL``) selects a server database;
    otherwise a SQLite file is used at ``CLINOPS_DB_PATH`` or in the user data
    directory.
    """

    echo = os.getenv("CLINOPS_DB_ECHO", "").lower() in {"1", "true", "yes"}
    url = os.getenv("CLINOPS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=_normalise_postgres_url(url), echo=echo)
    return DatabaseSettings(url=f"sqlite:///{_sqlite_path(os.getenv('CLINOPS_DB_PATH'))}", echo=echo)
