from __future__ import annotations

from datetime import date, datetime, time, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from supplyhub.core.config import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def local_zone(name: str | None = None) -> ZoneInfo:
    return _zone(name or get_settings().local_timezone)


def local_midnight_utc(day: date, zone: ZoneInfo | None = None) -> datetime:
    """Return the UTC instant of local midnight at the start of ``day``."""
    tz = zone or local_zone()
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def local_today(zone: ZoneInfo | None = None) -> date:
    tz = zone or local_zone()
    return utcnow().astimezone(tz).date()
