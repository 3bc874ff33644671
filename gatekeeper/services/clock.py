from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def parse_reset_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def quota_day(now: datetime, tz: str, reset_time: str = "00:00") -> date:
    """Return the local quota day for ``now``.

    The day rolls over at ``reset_time`` local time, so with a 04:00 reset
    03:59 local still belongs to the previous day.
    """
    local = ensure_utc(now).astimezone(load_zone(tz))
    boundary = parse_reset_time(reset_time)
    shifted = local - timedelta(hours=boundary.hour, minutes=boundary.minute)
    return shifted.date()


def next_reset_at(now: datetime, tz: str, reset_time: str = "00:00") -> datetime:
    """UTC instant of the next local reset boundary strictly after ``now``."""
    zone = load_zone(tz)
    local = ensure_utc(now).astimezone(zone)
    boundary = parse_reset_time(reset_time)
    candidate = datetime.combine(local.date(), boundary, tzinfo=zone)
    if candidate <= local:
        candidate = datetime.combine(local.date() + timedelta(days=1), boundary, tzinfo=zone)
    return candidate.astimezone(timezone.utc)


def local_now(tz: str, now: datetime | None = None) -> datetime:
    return ensure_utc(now or utcnow()).astimezone(load_zone(tz))
