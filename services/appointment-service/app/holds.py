"""
Hold expiry policy and the cancellation window.

An unpaid hold blocks its slots for HOLD_TTL after creation; after that it
is ignored by availability and booking and is eventually reaped. A
confirmed appointment may be cancelled only until CANCELLATION_CUTOFF
before it starts.
"""
import math
from datetime import date, datetime, time, timedelta, timezone

from dateutil import tz

from .states import AppointmentState

HOLD_TTL = timedelta(minutes=15)
CANCELLATION_CUTOFF = timedelta(hours=1)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hold_cutoff(now: datetime) -> datetime:
    """Holds created at or before this instant have expired."""
    return as_utc(now) - HOLD_TTL


def is_live_hold(created_at: datetime, now: datetime) -> bool:
    return as_utc(created_at) > hold_cutoff(now)


def blocks_slots(state: AppointmentState, created_at: datetime, now: datetime) -> bool:
    state = AppointmentState(state)
    if state is AppointmentState.CONFIRMED:
        return True
    if state is AppointmentState.HELD:
        return is_live_hold(created_at, now)
    return False


def resolve_tz(name: str | None):
    return tz.gettz(name) if name else None


def today_in(tz_name: str, now: datetime) -> date:
    zone = resolve_tz(tz_name) or timezone.utc
    return as_utc(now).astimezone(zone).date()


def appointment_start(day: date, start_time: str, tz_name: str) -> datetime:
    hours, minutes = (int(p) for p in start_time.split(":"))
    zone = resolve_tz(tz_name) or timezone.utc
    return datetime.combine(day, time(hours, minutes), tzinfo=zone).astimezone(timezone.utc)


def cancellation_allowed(start: datetime, now: datetime) -> bool:
    return as_utc(now) < as_utc(start) - CANCELLATION_CUTOFF


def hours_until(start: datetime, now: datetime) -> int:
    delta = as_utc(start) - as_utc(now)
    return math.floor(delta.total_seconds() / 3600)
