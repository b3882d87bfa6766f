"""Database helpers for clinops."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import Database

__all__ = [
    "Base",
    "Database",
    "DatabaseSettings",
    "get_database_settings",
]
