import logging

from sqlalchemy import select

from .config import SERVICE_NAME
from .confirmation import booking_summary
from .errors import ForbiddenError
from .models import Booking, Payment
from .rbac import PROVIDER_ROLE, Caller, ensure_participant, ensure_provider_or_admin
from .reschedule import load_booking
from .reservations import utcnow
from .states import ACTIVE_STATUSES, BookingStatus, PaymentStatus, ensure_transition

logger = logging.getLogger(__name__)


async def get_booking(session_factory, booking_id: str, caller: Caller) -> Booking:
    async with session_factory() as db:
        booking = await load_booking(db, booking_id)
    ensure_participant(booking, caller)
    return booking


async def payment_for(session_factory, booking_id: str) -> Payment | None:
    async with session_factory() as db:
        res = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
        return res.scalar_one_or_none()


async def list_provider_bookings(session_factory, caller: Caller, provider_id: str | None = None) -> list[Booking]:
    """A provider's bookings, newest first. Administrators may name any provider, or none for all."""
    if not caller.is_admin:
        if PROVIDER_ROLE not in caller.roles or provider_id not in (None, caller.user_id):
            raise ForbiddenError("Only the provider or an administrator can list these bookings")
        provider_id = caller.user_id

    stmt = select(Booking)
    if provider_id is not None:
        stmt = stmt.where(Booking.provider_id == provider_id)
    stmt = stmt.order_by(Booking.start_at.desc())

    async with session_factory() as db:
        res = await db.execute(stmt)
        return list(res.scalars().all())


async def list_customer_bookings(session_factory, caller: Caller) -> list[Booking]:
    """Active bookings, newest first: the caller's own, or everyone's for an administrator."""
    stmt = select(Booking).where(Booking.status.in_(ACTIVE_STATUSES))
    if not caller.is_admin:
        stmt = stmt.where(Booking.customer_id == caller.user_id)
    stmt = stmt.order_by(Booking.start_at.desc())

    async with session_factory() as db:
        res = await db.execute(stmt)
        return list(res.scalars().all())


async def payment_history(session_factory, caller: Caller) -> list[tuple[Payment, Booking]]:
    stmt = (
        select(Payment, Booking)
        .join(Booking, Booking.booking_id == Payment.booking_id)
        .where(Payment.customer_id == caller.user_id, Payment.status == PaymentStatus.PAID)
        .order_by(Payment.paid_at.desc())
    )
    async with session_factory() as db:
        res = await db.execute(stmt)
        return [(payment, booking) for payment, booking in res.all()]


async def change_status(
    session_factory,
    notifier,
    booking_id: str,
    target: BookingStatus,
    caller: Caller,
    clock=utcnow,
) -> Booking:
    refunded = None

    async with session_factory() as db:
        async with db.begin():
            booking = await load_booking(db, booking_id)
            ensure_provider_or_admin(booking, caller)
            ensure_transition(booking.status, target)

            booking.status = target
            if target == BookingStatus.CONFIRMED and booking.confirmed_at is None:
                booking.confirmed_at = clock()

            if target == BookingStatus.CANCELLED:
                res = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
                payment = res.scalar_one_or_none()
                if payment is not None and payment.status == PaymentStatus.PAID:
                    payment.status = PaymentStatus.REFUNDED
                    refunded = payment

    logger.info("[%s] booking %s is now %s", SERVICE_NAME, booking.booking_id, target.value)

    data = booking_summary(booking)
    if target == BookingStatus.COMPLETED:
        await notifier.notify(
            caller.user_id,
            booking.customer_id,
            "How was your appointment? Leave feedback for your provider.",
            "feedback_request",
            data,
        )
    await notifier.publish_event(f"booking.{target.value}", data)

    if refunded is not None:
        logger.info("[%s] refund requested for payment %s", SERVICE_NAME, refunded.payment_id)
        await notifier.publish_event(
            "payment.refund_requested",
            {
                **data,
                "payment_id": refunded.payment_id,
                "amount": str(refunded.amount),
                "external_payment_reference": refunded.external_payment_reference,
            },
        )
    return booking
