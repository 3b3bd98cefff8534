from __future__ import annotations

import os
from collections.abc import Mapping
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

DEFAULT_BUSINESS_TIMEZONE = "Africa/Cairo"


def utcnow() -> datetime:
    return datetime.now(UTC)


def business_timezone(environ: Mapping[str, str] | None = None) -> ZoneInfo:
    env = os.environ if environ is None else environ
    name = env.get("SF_BUSINESS_TIMEZONE", "").strip() or DEFAULT_BUSINESS_TIMEZONE
    return ZoneInfo(name)


def business_today(tz: ZoneInfo | None = None, *, now: datetime | None = None) -> date:
    zone = tz or business_timezone()
    return (now or utcnow()).astimezone(zone).date()


def business_day_bounds(day: date, tz: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` of a business day, expressed in UTC."""
    zone = tz or business_timezone()
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = start + timedelta(days=1)
    return start.astimezone(UTC), end.astimezone(UTC)
