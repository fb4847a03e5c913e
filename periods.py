from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @property
    def days(self) -> int:
        # whole days, truncated toward zero like a calendar-agnostic diff
        delta = self.end - self.start
        seconds = delta.total_seconds()
        return int(seconds / 86400)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def local_now(timezone: Optional[str] = None) -> datetime:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def to_local_naive(moment: datetime, timezone: Optional[str] = None) -> datetime:
    if moment.tzinfo is None:
        return moment
    tz = ZoneInfo(timezone or get_settings().timezone)
    return moment.astimezone(tz).replace(tzinfo=None)


def month_bounds(moment: datetime) -> DateRange:
    first = moment.date().replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    start = datetime.combine(first, time.min)
    end = datetime.combine(next_month - date.resolution, time.max)
    return DateRange(start, end)


def parse_instant(
    value: str, *, end_of_day: bool = False, timezone: Optional[str] = None
) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value}") from exc
    parsed = to_local_naive(parsed, timezone)
    if end_of_day and len(raw) == 10:
        parsed = datetime.combine(parsed.date(), time.max)
    return parsed


def resolve_range(
    start: Optional[str],
    end: Optional[str],
    *,
    now: Optional[datetime] = None,
    timezone: Optional[str] = None,
) -> DateRange:
    now = now or local_now(timezone)
    default = month_bounds(now)
    start_at = parse_instant(start, timezone=timezone) if start else default.start
    end_at = (
        parse_instant(end, end_of_day=True, timezone=timezone) if end else default.end
    )
    return DateRange(start_at, end_at)
