"""
Slot availability calculator.

Pure functions over a snapshot of the day's reservations: nothing here
touches the database or the clock.
"""
import re
from datetime import date, datetime
from typing import Iterable, Protocol

from .errors import ValidationError
from .holds import blocks_slots
from .states import AppointmentState

SLOT_MINUTES = 30
DAY_START_MINUTES = 9 * 60  # 09:00
LAST_START_MINUTES = 17 * 60 + 30  # 17:30

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


class SlotHolder(Protocol):
    state: AppointmentState
    created_at: datetime
    booked_slots: list


def to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def from_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def generate_time_slots() -> list[str]:
    return [
        from_minutes(m)
        for m in range(DAY_START_MINUTES, LAST_START_MINUTES + 1, SLOT_MINUTES)
    ]


def parse_date(value: str | None) -> date:
    if not value or not isinstance(value, str):
        raise ValidationError(
            "Date parameter is required in YYYY-MM-DD format", "INVALID_DATE"
        )
    if not _DATE_RE.match(value):
        raise ValidationError("Invalid date format. Use YYYY-MM-DD", "INVALID_DATE_FORMAT")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError("Invalid date format. Use YYYY-MM-DD", "INVALID_DATE_FORMAT")


def parse_time(value: str | None) -> str:
    """Normalize ``H:MM`` / ``HH:MM`` to ``HH:MM``."""
    m = _TIME_RE.match(value or "")
    if not m:
        raise ValidationError("Invalid time format. Use HH:MM", "INVALID_TIME_FORMAT")
    return f"{int(m.group(1)):02d}:{m.group(2)}"


def is_bookable(hhmm: str) -> bool:
    minutes = to_minutes(hhmm)
    return (
        DAY_START_MINUTES <= minutes <= LAST_START_MINUTES
        and minutes % SLOT_MINUTES == 0
    )


def ensure_bookable_time(hhmm: str) -> None:
    if not is_bookable(hhmm):
        raise ValidationError(
            "Time must be within business hours (09:00-17:30) in 30-minute intervals",
            "INVALID_TIME_SLOT",
        )


def ensure_not_past(day: date, today: date, action: str = "book appointments") -> None:
    if day < today:
        raise ValidationError(f"Cannot {action} for past dates", "PAST_DATE")


def expand_slots(start: str, duration_minutes: int) -> list[str]:
    count = duration_minutes // SLOT_MINUTES
    first = to_minutes(start)
    return [from_minutes(first + i * SLOT_MINUTES) for i in range(count)]


def resolve_booked_slots(start: str, duration_minutes: int | None, slots: list[str] | None) -> tuple[int, list[str]]:
    """
    Returns ``(duration, booked_slots)`` for a booking request.

    Without an explicit slot list the slots are derived from the duration.
    With one, it must be the contiguous run starting at ``start``.
    """
    if duration_minutes is not None:
        if duration_minutes <= 0 or duration_minutes % SLOT_MINUTES:
            raise ValidationError(
                "Duration must be a positive multiple of 30 minutes", "INVALID_DURATION"
            )

    if slots:
        normalized = [parse_time(s) for s in slots]
        duration = duration_minutes or len(normalized) * SLOT_MINUTES
        expected = expand_slots(start, duration)
        if normalized != expected:
            raise ValidationError(
                "Slots must be consecutive 30-minute slots starting at the requested time",
                "INVALID_SLOTS",
            )
    else:
        duration = duration_minutes or SLOT_MINUTES
        normalized = expand_slots(start, duration)

    for s in normalized:
        ensure_bookable_time(s)
    return duration, normalized


def blocked_slots(snapshot: Iterable[SlotHolder], now: datetime) -> set[str]:
    blocked: set[str] = set()
    for r in snapshot:
        if blocks_slots(r.state, r.created_at, now):
            blocked.update(r.booked_slots or [])
    return blocked


def compute_availability(day: date, today: date, snapshot: Iterable[SlotHolder], now: datetime) -> list[dict]:
    ensure_not_past(day, today, action="check availability")
    blocked = blocked_slots(snapshot, now)
    return [{"time": t, "available": t not in blocked} for t in generate_time_slots()]
