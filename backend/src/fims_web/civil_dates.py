"""Civil-day arithmetic for the operating region.

Entry dates, batch ranges and report labels are all expressed in the
region's calendar. Instants are stored in UTC; day boundaries are computed
in the region zone so DST transitions move the UTC offset, not the day.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_REGION_TIMEZONE = "Europe/Sarajevo"


class CivilDateError(ValueError):
    pass


@dataclass(frozen=True)
class CivilDateRange:
    date_from: date
    date_to: date
    range_start: datetime
    range_end: datetime


def region_zone(name: str | None = None) -> ZoneInfo | timezone:
    candidate = (name or DEFAULT_REGION_TIMEZONE).strip()
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day(day: date, zone: ZoneInfo | timezone) -> datetime:
    return datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)


def start_of_next_day(day: date, zone: ZoneInfo | timezone) -> datetime:
    return start_of_day(day + timedelta(days=1), zone)


def today_in_region(zone: ZoneInfo | timezone, now: datetime | None = None) -> date:
    current = now or _now_utc()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(zone).date()


def yesterday_in_region(zone: ZoneInfo | timezone, now: datetime | None = None) -> date:
    return today_in_region(zone, now) - timedelta(days=1)


def resolve_date_range(
    date_from: date | None,
    date_to: date | None,
    zone: ZoneInfo | timezone,
    *,
    now: datetime | None = None,
) -> CivilDateRange:
    first_day = date_from or yesterday_in_region(zone, now)
    last_day = date_to or first_day
    if last_day < first_day:
        raise CivilDateError("date_to must be greater than or equal to date_from")
    return CivilDateRange(
        date_from=first_day,
        date_to=last_day,
        range_start=start_of_day(first_day, zone),
        range_end=start_of_next_day(last_day, zone),
    )


def normalize_entry_date(value: date | datetime, zone: ZoneInfo | timezone) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=zone).astimezone(timezone.utc)
        return value.astimezone(timezone.utc)
    return start_of_day(value, zone)


def civil_date_of(instant: datetime, zone: ZoneInfo | timezone) -> date:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(zone).date()


def format_civil_date(instant: datetime | date, zone: ZoneInfo | timezone) -> str:
    day = civil_date_of(instant, zone) if isinstance(instant, datetime) else instant
    return day.strftime("%d.%m.%Y")


def format_range_labels(
    range_start: datetime, range_end: datetime, zone: ZoneInfo | timezone
) -> tuple[str, str]:
    # range_end is exclusive; the last included day is the one just before it.
    last_instant = range_end - timedelta(microseconds=1)
    return format_civil_date(range_start, zone), format_civil_date(last_instant, zone)
