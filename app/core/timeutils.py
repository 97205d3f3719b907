# app/core/timeutils.py
from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

PARIS_TZ = ZoneInfo("Europe/Paris")

WEEKDAYS_EN = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Les drivers sans fuseau (SQLite) renvoient des datetimes naïfs, stockés en UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def paris_now(now: datetime | None = None) -> datetime:
    return as_utc(now or utcnow()).astimezone(PARIS_TZ)


def paris_today(now: datetime | None = None) -> date:
    return paris_now(now).date()


def paris_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    """Début / fin (exclue) d'une journée Europe/Paris, exprimés en UTC."""
    start = datetime(day.year, day.month, day.day, tzinfo=PARIS_TZ)
    end = datetime.fromordinal(day.toordinal() + 1).replace(tzinfo=PARIS_TZ)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
