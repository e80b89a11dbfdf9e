"""
Free slot computation for one service on one calendar day.

Slots tile the working day in steps of the service duration. A slot is free
when it overlaps none of the day's active bookings in the conflict scope.
Results are recomputed on every call.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator

from sqlalchemy.ext.asyncio import AsyncSession

from .conflicts import PROVIDER_SCOPE, active_bookings_query
from .errors import InvalidSlotError
from .intervals import day_window, format_minutes, interval_for, minutes_into_day, parse_clock

SUNDAY = 6
MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class WorkingHours:
    open_minute: int = 9 * 60
    close_minute: int = 18 * 60
    closed_weekdays: frozenset = field(default_factory=lambda: frozenset({SUNDAY}))

    @classmethod
    def from_clock(cls, open_at: str, close_at: str, closed_weekdays=None) -> "WorkingHours":
        hours = cls(
            open_minute=parse_clock(open_at),
            close_minute=parse_clock(close_at),
            closed_weekdays=frozenset({SUNDAY} if closed_weekdays is None else closed_weekdays),
        )
        if hours.close_minute <= hours.open_minute:
            raise ValueError(f"Working day closes before it opens: {open_at}-{close_at}")
        return hours

    def is_closed(self, day: date) -> bool:
        return day.weekday() in self.closed_weekdays

    def validate(self, start: datetime, end: datetime):
        """Reject a requested interval that falls outside one open working day."""
        day = start.date()
        if self.is_closed(day):
            raise InvalidSlotError(f"Bookings are not available on {day.strftime('%A')}s")

        start_minute = minutes_into_day(day, start)
        end_minute = minutes_into_day(day, end)
        if start_minute < self.open_minute or end_minute > self.close_minute:
            raise InvalidSlotError(
                "Bookings are only available between "
                f"{format_minutes(self.open_minute)} and {format_minutes(self.close_minute)}"
            )


def blocked_intervals(bookings: Iterable, day: date) -> list[tuple[int, int]]:
    """Bookings as [start, end) minute offsets into `day`, clamped to the day."""
    blocked = []
    for booking in bookings:
        start, end = interval_for(booking)
        start_minute = max(0, minutes_into_day(day, start))
        end_minute = min(MINUTES_PER_DAY, minutes_into_day(day, end))
        if end_minute > start_minute:
            blocked.append((start_minute, end_minute))
    return blocked


def iter_free_slots(hours: WorkingHours, duration: int, blocked: list[tuple[int, int]]) -> Iterator[int]:
    if duration <= 0:
        return

    candidate = hours.open_minute
    while candidate + duration <= hours.close_minute:
        candidate_end = candidate + duration
        if not any(candidate < b_end and candidate_end > b_start for b_start, b_end in blocked):
            yield candidate
        candidate += duration


async def available_slots(
    db: AsyncSession,
    service,
    day: date,
    hours: WorkingHours,
    exclude_booking_id: str | None = None,
    scope: str = PROVIDER_SCOPE,
) -> list[str]:
    if hours.is_closed(day):
        return []

    day_start, day_end = day_window(day)
    stmt = active_bookings_query(
        scope=scope,
        provider_id=service.provider_id,
        service_id=service.service_id,
        start=day_start,
        end=day_end,
        exclude_booking_id=exclude_booking_id,
    )
    res = await db.execute(stmt)
    blocked = blocked_intervals(res.scalars().all(), day)

    return [format_minutes(m) for m in iter_free_slots(hours, service.duration_minutes, blocked)]


def slot_end(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)
