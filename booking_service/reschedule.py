import logging
from datetime import datetime

from sqlalchemy import select

from .conflicts import PROVIDER_SCOPE, has_conflict, scope_key
from .config import SERVICE_NAME
from .confirmation import booking_summary, describe_slot
from .errors import ConflictError, InvalidTransitionError, NotFoundError
from .intervals import as_utc
from .locking import ScopeLocks, lock_scope_in_transaction
from .models import Booking
from .rbac import Caller, ensure_participant
from .slots import WorkingHours, slot_end
from .states import is_terminal

logger = logging.getLogger(__name__)


async def load_booking(db, booking_id: str) -> Booking:
    res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFoundError("booking")
    return booking


async def reschedule_booking(
    session_factory,
    locks: ScopeLocks,
    notifier,
    booking_id: str,
    new_start: datetime,
    caller: Caller,
    *,
    hours: WorkingHours,
    scope: str = PROVIDER_SCOPE,
) -> Booking:
    """
    Move a booking to a new start, keeping its identity and duration.

    Status and payment are never touched. The conflict check excludes the
    booking itself, so moving within its own current window is allowed.
    """
    new_start = as_utc(new_start)

    async with session_factory() as db:
        current = await load_booking(db, booking_id)
    ensure_participant(current, caller)

    key = scope_key(scope, current.provider_id, current.service_id)
    async with locks.hold(key):
        async with session_factory() as db:
            async with db.begin():
                await lock_scope_in_transaction(db, key)

                booking = await load_booking(db, booking_id)
                if is_terminal(booking.status):
                    raise InvalidTransitionError(
                        f"A {booking.status.value} booking cannot be rescheduled"
                    )

                new_end = slot_end(new_start, booking.duration_minutes)
                hours.validate(new_start, new_end)

                if await has_conflict(
                    db,
                    booking.provider_id,
                    booking.service_id,
                    new_start,
                    new_end,
                    exclude_booking_id=booking.booking_id,
                    scope=scope,
                ):
                    raise ConflictError()

                booking.start_at = new_start
                booking.end_at = new_end

    logger.info("[%s] booking %s rescheduled to %s", SERVICE_NAME, booking.booking_id, new_start.isoformat())

    # every party who did not make the change hears about it
    receivers = [
        user_id for user_id in (booking.customer_id, booking.provider_id)
        if user_id != caller.user_id
    ]

    for receiver_id in receivers:
        await notifier.notify(
            caller.user_id,
            receiver_id,
            f"Booking {booking.booking_id} was rescheduled to {describe_slot(booking)}",
            "booking_rescheduled",
            booking_summary(booking),
        )
    await notifier.publish_event("booking.rescheduled", booking_summary(booking))
    return booking
