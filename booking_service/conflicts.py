from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .intervals import interval_for, overlaps
from .models import Booking
from .states import ACTIVE_STATUSES

PROVIDER_SCOPE = "provider"
SERVICE_SCOPE = "service"


def scope_key(scope: str, provider_id: str, service_id: str) -> str:
    """Name of the resource whose calendar must stay free of overlaps."""
    if scope == SERVICE_SCOPE:
        return f"service:{service_id}"
    return f"provider:{provider_id}"


def active_bookings_query(
    *,
    scope: str,
    provider_id: str,
    service_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: str | None = None,
):
    stmt = select(Booking).where(
        Booking.status.in_(ACTIVE_STATUSES),
        Booking.start_at < end,
        Booking.end_at > start,
    )
    if scope == SERVICE_SCOPE:
        stmt = stmt.where(Booking.service_id == service_id)
    else:
        stmt = stmt.where(Booking.provider_id == provider_id)

    if exclude_booking_id:
        stmt = stmt.where(Booking.booking_id != exclude_booking_id)
    return stmt.order_by(Booking.start_at)


async def find_conflicts(
    db: AsyncSession,
    provider_id: str,
    service_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: str | None = None,
    scope: str = PROVIDER_SCOPE,
) -> list[Booking]:
    stmt = active_bookings_query(
        scope=scope,
        provider_id=provider_id,
        service_id=service_id,
        start=start,
        end=end,
        exclude_booking_id=exclude_booking_id,
    )
    res = await db.execute(stmt)
    # the SQL window is a prefilter; the interval test is authoritative
    return [b for b in res.scalars().all() if overlaps(*interval_for(b), start, end)]


async def has_conflict(
    db: AsyncSession,
    provider_id: str,
    service_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: str | None = None,
    scope: str = PROVIDER_SCOPE,
) -> bool:
    conflicts = await find_conflicts(
        db, provider_id, service_id, start, end,
        exclude_booking_id=exclude_booking_id,
        scope=scope,
    )
    return bool(conflicts)
