"""Building-local time helpers.

Timestamps are stored as naive UTC. Business rules that depend on the wall
clock (nightly cutoff, end-of-day visit expiry, "today") are evaluated in
``BUILDING_TIMEZONE``.
"""
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from guestpass.core.config import get_settings

settings = get_settings()

ROLLING_WINDOW = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def building_zone() -> ZoneInfo:
    return ZoneInfo(settings.BUILDING_TIMEZONE)


def to_local(moment: datetime) -> datetime:
    return moment.replace(tzinfo=timezone.utc).astimezone(building_zone())


def from_local(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def local_today(now: datetime | None = None) -> date:
    return to_local(now or utcnow()).date()


def parse_cutoff(value: str | None) -> time | None:
    value = (value or "").strip()
    if not value:
        return None
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


def nightly_cutoff() -> time | None:
    return parse_cutoff(settings.NIGHTLY_CUTOFF)


def is_after_cutoff(now: datetime, cutoff: time | None) -> bool:
    if cutoff is None:
        return False
    return to_local(now).time() >= cutoff


def start_of_local_day(moment: datetime) -> datetime:
    local = to_local(moment)
    return from_local(datetime.combine(local.date(), time(0, 0), tzinfo=local.tzinfo))


def end_of_local_day(moment: datetime) -> datetime:
    local = to_local(moment)
    end = datetime.combine(local.date(), time(23, 59, 59, 999000), tzinfo=local.tzinfo)
    return from_local(end)


def calculate_visit_expiration(checked_in_at: datetime) -> datetime:
    """min(check-in + VISIT_MAX_HOURS, end of the same building-local day)."""
    by_duration = checked_in_at + timedelta(hours=settings.VISIT_MAX_HOURS)
    return min(by_duration, end_of_local_day(checked_in_at))


def rolling_window_start(now: datetime) -> datetime:
    return now - ROLLING_WINDOW


def calculate_next_eligible_date(oldest_limiting_visit: datetime) -> datetime:
    return oldest_limiting_visit + ROLLING_WINDOW
