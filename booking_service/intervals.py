import re
from datetime import date, datetime, time, timedelta, timezone

from dateutil import parser

from .errors import InvalidSlotError

_TIME_RE = re.compile(r"^([0-1]?\d|2[0-3]):([0-5]\d)(?:\s*(AM|PM))?$", re.IGNORECASE)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    # half-open: touching endpoints do not overlap
    return a_start < b_end and a_end > b_start


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def interval_for(booking) -> tuple[datetime, datetime]:
    return as_utc(booking.start_at), as_utc(booking.end_at)


def day_window(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def minutes_into_day(day: date, instant: datetime) -> int:
    day_start, _ = day_window(day)
    return int((as_utc(instant) - day_start).total_seconds() // 60)


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_clock(value: str) -> int:
    """Parse "HH:MM" or "h:MM AM/PM" into minutes after midnight."""
    match = _TIME_RE.match((value or "").strip())
    if not match:
        raise InvalidSlotError(f"Invalid time slot format: {value!r}")

    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = (match.group(3) or "").upper()
    if period == "PM" and hours < 12:
        hours += 12
    if period == "AM" and hours == 12:
        hours = 0
    return hours * 60 + minutes


def parse_slot(day: date, slot: str) -> datetime:
    """
    Resolve a client slot into an aware UTC start instant.

    A full ISO datetime is taken as-is; a clock time is read on `day` in UTC.
    """
    slot = (slot or "").strip()
    if "T" in slot:
        try:
            return as_utc(parser.isoparse(slot))
        except (ValueError, OverflowError):
            raise InvalidSlotError(f"Invalid time slot: {slot!r}")

    day_start, _ = day_window(day)
    return day_start + timedelta(minutes=parse_clock(slot))
