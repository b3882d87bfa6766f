"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_upstream_datetime(value: Optional[str], tz_name: Optional[str] = None) -> Optional[datetime]:
    """Parse an EHR timestamp such as ``2025-07-14T09:30:00-0400``.

    Values without an offset are wall-clock times in ``tz_name`` (UTC when
    omitted).  Returns ``None`` for empty or unparseable values so callers can
    decide how to treat a missing service date.
    """

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Offsets without a colon (-0400) are accepted by fromisoformat on 3.11+,
    # but normalise them so older interpreters agree.
    if len(text) >= 5 and text[-5] in "+-" and text[-4:].isdigit() and text[-3] != ":":
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("unparseable_upstream_datetime", value=value)
        return None
    if parsed.tzinfo is None and tz_name:
        parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
    return ensure_utc(parsed)


def format_task_date(dt: Optional[datetime]) -> str:
    """Return ``MM/DD/YYYY`` used in remediation task subjects."""

    if dt is None:
        dt = utc_now()
    return dt.strftime("%m/%d/%Y")


__all__ = ["utc_now", "ensure_utc", "parse_upstream_datetime", "format_task_date"]
